"""推理编排核心：上下文预算、会话绑定、生成流水线、事件通道与编排器。"""

from chat_core.orchestration.budget import BudgetResult, compute_budget
from chat_core.orchestration.events import EventChannel
from chat_core.orchestration.orchestrator import Orchestrator
from chat_core.orchestration.pipeline import GenerationPipeline, make_title
from chat_core.orchestration.session import ChatSession, SessionBinder

__all__ = [
    "BudgetResult",
    "compute_budget",
    "EventChannel",
    "Orchestrator",
    "GenerationPipeline",
    "make_title",
    "ChatSession",
    "SessionBinder",
]
