"""对外 API 服务模块。

提供简化的函数接口供展示层调用，所有函数共享同一个默认编排器。
生成结果不通过返回值给出，而是通过 subscribe 注册的回调推送：

- token(text) / done() / error(message)：单次生成的流式事件。
- history(summaries)：会话列表在 save/delete 后的最新快照。
"""

from typing import Any, Callable, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationSummary
from chat_core.domain.models import GenerationEvent
from chat_core.orchestration.orchestrator import Orchestrator


_orchestrator: Optional[Orchestrator] = None


def get_default_orchestrator() -> Orchestrator:
    """获取默认编排器实例（单例），首次调用时在后台加载引擎。"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator(settings)
        _orchestrator.start(load_engine=True, background=True)
    return _orchestrator


def set_default_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    """替换默认编排器（测试或自定义装配时使用）。"""
    global _orchestrator
    _orchestrator = orchestrator


def _summary_dicts(items: List[ConversationSummary]) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in items]


def _conversation_dict(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "timestamp": conv.summary.to_dict()["timestamp"],
        "messages": [m.to_dict() for m in conv.messages],
    }


def subscribe(callback: Callable[[GenerationEvent], None]) -> Callable[[], None]:
    """注册事件回调，返回取消订阅函数。"""
    return get_default_orchestrator().channel.subscribe(callback)


def start_generation(prompt: str, conversation_id: str) -> None:
    """发起一次生成（fire-and-forget）。"""
    get_default_orchestrator().start_generation(prompt, conversation_id)


def stop_generation() -> bool:
    """请求停止进行中的生成（尽力而为）。"""
    return get_default_orchestrator().stop_generation()


def get_history() -> List[Dict[str, Any]]:
    """列出所有会话，最近修改的在前。

    Returns:
        会话摘要列表，每项包含 id, title, timestamp
    """
    return _summary_dicts(get_default_orchestrator().get_history())


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    """获取单个会话及其全部消息，不存在时返回 None。"""
    conv = get_default_orchestrator().get_conversation(conversation_id)
    return _conversation_dict(conv) if conv is not None else None


def create_conversation() -> Dict[str, Any]:
    """新建一个空会话。"""
    return _conversation_dict(get_default_orchestrator().create_conversation())


def rename_conversation(conversation_id: str, title: str) -> Optional[Dict[str, Any]]:
    conv = get_default_orchestrator().rename_conversation(conversation_id, title)
    return _conversation_dict(conv) if conv is not None else None


def delete_conversation(conversation_id: str) -> List[Dict[str, Any]]:
    """删除会话并返回最新的会话列表。"""
    return _summary_dicts(get_default_orchestrator().delete_conversation(conversation_id))


def engine_state() -> str:
    return get_default_orchestrator().engine_state.value


def shutdown(timeout: Optional[float] = None) -> bool:
    """释放默认编排器持有的资源；未创建过编排器时直接返回。"""
    if _orchestrator is None:
        return True
    return _orchestrator.shutdown(timeout)
