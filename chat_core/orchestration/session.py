"""推理会话与会话绑定。

整个进程只有一个共享推理上下文（EngineHandle.backend）。SessionBinder 负责把它
"借"给即将生成的那个会话：

- 会话 id 与当前绑定一致时直接复用已有 ChatSession（同一会话连续多轮不重放历史）。
- 不一致或尚未绑定时，释放旧 ChatSession（不关闭共享 backend），
  用系统提示词 + 裁剪后的历史构造新的 ChatSession 并记录绑定。
"""

import logging
import threading
from typing import Dict, Iterator, List, Optional, Sequence

from chat_core.domain.exceptions import StreamingFailure
from chat_core.domain.models import Message, SamplingParams
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import InferenceBackend


class ChatSession:
    """绑定到单个会话的推理会话状态。"""

    def __init__(
        self,
        backend: InferenceBackend,
        system_prompt: str,
        history: Sequence[Message] = (),
        max_history_chars: Optional[int] = None,
    ):
        self._backend = backend
        self._system_prompt = system_prompt
        self._history: List[Message] = list(history)
        self._max_history_chars = max_history_chars
        self._disposed = False

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def native_messages(self, prompt: Optional[str] = None) -> List[Dict[str, str]]:
        """转换为 llama.cpp 的 chat 消息格式。"""
        msgs = [{"role": "system", "content": self._system_prompt}]
        msgs.extend(m.to_dict() for m in self._history)
        if prompt is not None:
            msgs.append({"role": "user", "content": prompt})
        return msgs

    def prompt_stream(
        self,
        text: str,
        sampling: SamplingParams,
        max_tokens: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """发送一轮用户输入，逐段产出生成的文本。

        本轮写入会话历史的内容与持久化的内容一致：正常结束或取消后有回答时
        追加 user/assistant；出错、中途关闭或取消时尚无回答只追加 user。
        """

        if self._disposed:
            raise StreamingFailure(code="SESSION_DISPOSED", message="session has been disposed")
        self._shift_context(len(text))

        stream = self._backend.create_chat_completion(
            messages=self.native_messages(text),
            temperature=sampling.temperature,
            top_p=sampling.top_p,
            top_k=sampling.top_k,
            repeat_penalty=sampling.repeat_penalty,
            stop=sampling.stop or None,
            max_tokens=max_tokens,
            stream=True,
        )
        pieces: List[str] = []
        try:
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    break
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                piece = (choices[0].get("delta") or {}).get("content") or ""
                if piece:
                    pieces.append(piece)
                    yield piece
        except (Exception, GeneratorExit):
            # 用户消息已落盘而回答不会落盘，会话历史与之保持一致
            self._record_turn(text, None)
            raise
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        response = "".join(pieces)
        cancelled = cancel_event is not None and cancel_event.is_set()
        self._record_turn(text, None if cancelled and not response else response)

    def _record_turn(self, text: str, response: Optional[str]) -> None:
        if self._disposed:
            return
        self._history.append(Message(role="user", content=text))
        if response is not None:
            self._history.append(Message(role="assistant", content=response))

    def dispose(self) -> None:
        """释放会话状态；共享 backend 由 EngineHandle 负责关闭。"""
        self._disposed = True
        self._history = []

    def _shift_context(self, prompt_len: int) -> None:
        # 同一会话连续多轮时历史会持续增长，超出预算后从最旧的整条消息开始丢弃
        if self._max_history_chars is None:
            return
        total = sum(len(m.content) for m in self._history)
        while self._history and total + prompt_len > self._max_history_chars:
            total -= len(self._history.pop(0).content)


class SessionBinder:
    """唯一的会话绑定 {bound_conversation_id, session}。"""

    def __init__(
        self,
        backend: InferenceBackend,
        system_prompt: str,
        max_history_chars: Optional[int] = None,
    ):
        self._backend = backend
        self._system_prompt = system_prompt
        self._max_history_chars = max_history_chars
        self._bound_conversation_id: Optional[str] = None
        self._session: Optional[ChatSession] = None
        self._rebind_count = 0
        self._lock = threading.RLock()

    @property
    def bound_conversation_id(self) -> Optional[str]:
        return self._bound_conversation_id

    @property
    def session(self) -> Optional[ChatSession]:
        return self._session

    @property
    def rebind_count(self) -> int:
        return self._rebind_count

    def ensure_bound(
        self,
        conversation_id: str,
        trimmed_history: Sequence[Message],
        system_prompt: Optional[str] = None,
    ) -> ChatSession:
        with self._lock:
            if self._session is not None and self._bound_conversation_id == conversation_id:
                return self._session

            previous = self._bound_conversation_id
            self._release()
            # 清掉上一个会话留在共享上下文里的 KV 状态
            self._backend.reset()
            self._session = ChatSession(
                self._backend,
                system_prompt or self._system_prompt,
                trimmed_history,
                max_history_chars=self._max_history_chars,
            )
            self._bound_conversation_id = conversation_id
            self._rebind_count += 1
            log_event(
                logging.INFO,
                "Rebound session",
                {"conversation_id": conversation_id},
                previous_conversation_id=previous,
                history_messages=len(trimmed_history),
                rebind_count=self._rebind_count,
            )
            return self._session

    def clear(self, conversation_id: Optional[str] = None) -> bool:
        """清除绑定；给定 id 时只有与当前绑定一致才清除。"""
        with self._lock:
            if self._session is None:
                return False
            if conversation_id is not None and conversation_id != self._bound_conversation_id:
                return False
            cleared = self._bound_conversation_id
            self._release()
            log_event(logging.INFO, "Cleared session binding", {"conversation_id": cleared})
            return True

    def dispose(self) -> None:
        with self._lock:
            self._release()

    def _release(self) -> None:
        if self._session is not None:
            self._session.dispose()
        self._session = None
        self._bound_conversation_id = None
