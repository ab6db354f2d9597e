"""统一的对话与事件数据模型。

本模块定义了编排核心内部共享的标准数据结构：

- Message: 一条对话消息（user/assistant）。
- EngineState / LoadOutcome: 推理引擎的生命周期状态与加载结果。
- SamplingParams: 一次生成使用的固定采样参数。
- GenerationEvent: 推送给展示层的流式事件。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple


# 会话消息角色（system 提示词不持久化，只存在于推理会话中）
Role = Literal["user", "assistant"]
ROLES: Tuple[str, ...] = ("user", "assistant")


@dataclass
class Message:
    """一条对话消息。

    除了正在流式生成的最后一条 assistant 消息外，消息只追加不修改。
    """

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class EngineState(str, Enum):
    """进程级推理引擎状态，启动期设置一次，READY / FAILED 为终态。"""

    UNINITIALIZED = "uninitialized"
    LOADING_GPU = "loading_gpu"
    LOADING_CPU = "loading_cpu"
    READY = "ready"
    FAILED = "failed"


class LoadOutcome(str, Enum):
    """GPU→CPU 回退加载的三种结果。"""

    GPU_OK = "gpu_ok"
    CPU_FALLBACK_OK = "cpu_fallback_ok"
    BOTH_FAILED = "both_failed"


@dataclass
class SamplingParams:
    """固定采样参数，stop 为模型的轮次边界 token。"""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    stop: List[str] = field(default_factory=list)


EventKind = Literal["token", "done", "error", "history"]


@dataclass
class GenerationEvent:
    """核心产生、展示层消费的事件。

    kind:
        - "token": 一段新生成的文本，按生成顺序推送。
        - "done": 每次生成恰好一个（包括被软拒绝/中止的请求）。
        - "error": 单次生成失败，之后一定跟随 "done"。
        - "history": 会话列表发生变化（save/delete 之后）。
    """

    kind: EventKind
    text: Optional[str] = None
    message: Optional[str] = None
    conversation_id: Optional[str] = None
    history: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def token(cls, text: str, conversation_id: Optional[str] = None) -> "GenerationEvent":
        return cls(kind="token", text=text, conversation_id=conversation_id)

    @classmethod
    def done(cls, conversation_id: Optional[str] = None) -> "GenerationEvent":
        return cls(kind="done", conversation_id=conversation_id)

    @classmethod
    def error(cls, message: str, conversation_id: Optional[str] = None) -> "GenerationEvent":
        return cls(kind="error", message=message, conversation_id=conversation_id)

    @classmethod
    def history_update(cls, history: List[Dict[str, Any]]) -> "GenerationEvent":
        return cls(kind="history", history=history)
