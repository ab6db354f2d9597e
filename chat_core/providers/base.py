"""推理后端抽象接口。

编排层不直接依赖 llama_cpp，而是依赖此协议：

- 真实实现是 llama_cpp.Llama（模型 + 共享推理上下文合为一个对象）。
- 测试中用假的后端替换，只需实现同名方法。
"""

from typing import Any, Dict, Iterator, List, Optional, Protocol


class InferenceBackend(Protocol):
    """本地推理后端协议。

    - create_chat_completion(stream=True): 逐块产出 OpenAI 风格的增量字典，
      形如 {"choices": [{"delta": {"content": "..."}, "finish_reason": None}]}。
    - reset(): 清空 KV 状态，不释放模型。
    - close(): 释放上下文与模型。
    """

    def create_chat_completion(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float,
        top_p: float,
        top_k: int,
        repeat_penalty: float,
        stop: Optional[List[str]],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Iterator[Dict[str, Any]]:
        ...

    def reset(self) -> None:
        ...

    def close(self) -> None:
        ...
