"""模型家族配置。

本模块将"模型家族"与 llama.cpp 的对话模板、轮次边界 token 解耦：

- family：配置里使用的统一名称，例如 "chatml"、"llama-3"。
- chat_format：llama-cpp-python 的 chat_format 名称。
- stop：生成时需要识别的轮次边界 token，遇到即停止。

上层只关心 family，具体模板和停止序列在这里集中维护。"""

from dataclasses import dataclass, field
from typing import List, Mapping, Optional


@dataclass
class ModelProfile:
    """单个模型家族的配置。"""

    family: str
    chat_format: Optional[str]
    stop: List[str] = field(default_factory=list)


CHATML_PROFILE = ModelProfile(
    family="chatml",
    chat_format="chatml",
    stop=["<|im_end|>", "<|im_start|>"],
)

LLAMA3_PROFILE = ModelProfile(
    family="llama-3",
    chat_format="llama-3",
    stop=["<|eot_id|>", "<|start_header_id|>", "<|end_of_text|>"],
)

MISTRAL_PROFILE = ModelProfile(
    family="mistral",
    chat_format="mistral-instruct",
    stop=["</s>", "[INST]"],
)

PHI3_PROFILE = ModelProfile(
    family="phi-3",
    chat_format=None,  # 使用 GGUF 内嵌模板
    stop=["<|end|>", "<|user|>", "<|endoftext|>"],
)

GEMMA_PROFILE = ModelProfile(
    family="gemma",
    chat_format="gemma",
    stop=["<end_of_turn>", "<start_of_turn>"],
)


MODEL_PROFILES: Mapping[str, ModelProfile] = {
    "chatml": CHATML_PROFILE,
    "llama-3": LLAMA3_PROFILE,
    "mistral": MISTRAL_PROFILE,
    "phi-3": PHI3_PROFILE,
    "gemma": GEMMA_PROFILE,
}


def get_model_profile(family: str) -> ModelProfile:
    """根据名称获取 ModelProfile，名称不区分大小写。"""

    key = family.lower()
    for k, cfg in MODEL_PROFILES.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown model family: {family!r}")
