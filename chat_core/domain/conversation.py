from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .models import Message, ROLES


DEFAULT_TITLE = "New Chat"


def _format_ts(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        # 不带时区的旧记录按 UTC 处理
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class ConversationSummary:
    id: str
    title: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "timestamp": _format_ts(self.timestamp)}


@dataclass
class Conversation:
    id: str
    title: str
    timestamp: datetime
    messages: List[Message] = field(default_factory=list)

    @property
    def summary(self) -> ConversationSummary:
        return ConversationSummary(id=self.id, title=self.title, timestamp=self.timestamp)

    def has_user_turn(self) -> bool:
        return any(m.role == "user" for m in self.messages)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "timestamp": _format_ts(self.timestamp),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Conversation":
        """从持久化记录恢复会话；字段缺失或类型不对时抛 KeyError/ValueError/TypeError。"""
        messages: List[Message] = []
        for item in data.get("messages") or []:
            role = item["role"]
            if role not in ROLES:
                raise ValueError(f"unknown role: {role!r}")
            messages.append(Message(role=role, content=str(item.get("content") or "")))
        return cls(
            id=str(data["id"]),
            title=data.get("title") or DEFAULT_TITLE,
            timestamp=_parse_ts(data["timestamp"]),
            messages=messages,
        )


HistoryListener = Callable[[List[ConversationSummary]], None]


class RecordStore(Protocol):
    """最小 key-value 接口，存储介质（文件/嵌入式数据库）是实现细节。"""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def put(self, key: str, record: Dict[str, Any]) -> None:
        ...

    def keys(self) -> Iterable[str]:
        ...

    def delete(self, key: str) -> bool:
        ...


class ConversationStore(Protocol):
    def list(self) -> List[ConversationSummary]:
        ...

    def load(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def save(self, conversation: Conversation) -> None:
        ...

    def create(self) -> Conversation:
        ...

    def delete(self, conversation_id: str) -> bool:
        ...

    def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        ...

    def append_message(
        self, conversation_id: str, message: Message, title_if_first: Optional[str] = None
    ) -> Optional[Conversation]:
        ...

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        ...

    def on_delete(self, listener: Callable[[str], None]) -> None:
        ...
