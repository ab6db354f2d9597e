import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationSummary,
    HistoryListener,
    RecordStore,
)
from chat_core.domain.models import Message
from chat_core.domain.exceptions import BusinessError, PersistenceFailure, ValidationError
from chat_core.infrastructure.logging.logger import log_event

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _check_key(key: str) -> None:
    # key 会直接成为文件名
    if not key or not _KEY_RE.match(key):
        raise ValidationError(code="INVALID_CONVERSATION_ID", message=repr(key))


class JsonRecordStore(RecordStore):
    """每条记录一个 JSON 文件，文件名即 key。"""

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceFailure(code="STORE_INIT_ERROR", message=str(e))

    @property
    def root(self) -> Path:
        return self._root

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        _check_key(key)
        path = self._root / f"{key}.json"
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceFailure(code="STORE_READ_ERROR", message=str(e), key=key)
        if not isinstance(data, dict):
            raise PersistenceFailure(code="STORE_READ_ERROR", message="record is not an object", key=key)
        return data

    def put(self, key: str, record: Dict[str, Any]) -> None:
        _check_key(key)
        path = self._root / f"{key}.json"
        tmp_path = self._root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(record, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceFailure(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def keys(self) -> Iterable[str]:
        # 文件名不是合法 key 的文件（备份、手工放入的文件）不属于本存储
        return sorted(p.stem for p in self._root.glob("*.json") if _KEY_RE.match(p.stem))

    def delete(self, key: str) -> bool:
        _check_key(key)
        path = self._root / f"{key}.json"
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise PersistenceFailure(code="STORE_DELETE_ERROR", message=str(e), key=key)
        return True


class JsonConversationStore:
    """会话存储：CRUD + 变更通知。

    save/delete 之后会把最新的 list() 推送给所有订阅者；
    delete 还会通知删除监听者（用于清理会话绑定）。
    """

    def __init__(self, root: str | Path | None = None, records: Optional[RecordStore] = None):
        if records is None:
            base = Path(root or settings.storage_root)
            records = JsonRecordStore(base / "conversations")
        self._records = records
        self._lock = RLock()
        self._listeners: List[HistoryListener] = []
        self._delete_listeners: List[Callable[[str], None]] = []

    def list(self) -> List[ConversationSummary]:
        items: List[ConversationSummary] = []
        with self._lock:
            keys = list(self._records.keys())
            for key in keys:
                try:
                    data = self._records.get(key)
                    if data is None:
                        continue
                    items.append(Conversation.from_record(data).summary)
                except (BusinessError, KeyError, ValueError, TypeError) as e:
                    log_event(logging.WARNING, "Skipped unreadable conversation record", {}, key=key, error=str(e))
                    continue
        items.sort(key=lambda s: s.timestamp, reverse=True)
        return items

    def load(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            data = self._records.get(conversation_id)
        if data is None:
            return None
        try:
            return Conversation.from_record(data)
        except (KeyError, ValueError, TypeError) as e:
            raise PersistenceFailure(code="STORE_READ_ERROR", message=str(e), conversation_id=conversation_id)

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            conversation.timestamp = datetime.now(timezone.utc)
            self._records.put(conversation.id, conversation.to_record())
        self._notify()

    def create(self) -> Conversation:
        conv = Conversation(
            id=f"c-{uuid4().hex}",
            title=DEFAULT_TITLE,
            timestamp=datetime.now(timezone.utc),
            messages=[],
        )
        self.save(conv)
        log_event(logging.INFO, "Created new conversation", {"conversation_id": conv.id})
        return conv

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            removed = self._records.delete(conversation_id)
        if removed:
            log_event(logging.INFO, "Deleted conversation", {"conversation_id": conversation_id})
            for listener in list(self._delete_listeners):
                listener(conversation_id)
        self._notify()
        return removed

    def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        """更新会话标题。"""
        title = (title or "").strip()
        if not title:
            raise ValidationError(code="EMPTY_TITLE", message="title must not be empty")
        with self._lock:
            conv = self.load(conversation_id)
            if conv is None:
                return None
            conv.title = title
            self.save(conv)
        return conv

    def append_message(
        self,
        conversation_id: str,
        message: Message,
        title_if_first: Optional[str] = None,
    ) -> Optional[Conversation]:
        """在锁内重新读取会话、追加一条消息并保存。

        title_if_first 仅在追加的是首条用户消息时写入标题。
        会话已被删除时返回 None。
        """
        with self._lock:
            conv = self.load(conversation_id)
            if conv is None:
                return None
            if title_if_first and message.role == "user" and not conv.has_user_turn():
                conv.title = title_if_first
            conv.messages.append(message)
            self.save(conv)
        return conv

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_delete(self, listener: Callable[[str], None]) -> None:
        self._delete_listeners.append(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        summaries = self.list()
        for listener in list(self._listeners):
            listener(summaries)
