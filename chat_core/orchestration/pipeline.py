"""单次生成流水线。

load → compute_budget → ensure_bound → 持久化用户消息 → 流式生成 → 持久化回答，
全程以 GenerationEvent 推送。同一时刻只允许一次生成（非阻塞锁），
被拒绝或中止的请求也一定以 "done" 收尾，展示层不会一直等待。
"""

import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError, PersistenceFailure, ValidationError
from chat_core.domain.models import GenerationEvent, Message, SamplingParams
from chat_core.infrastructure.logging.logger import log_event
from chat_core.orchestration.budget import compute_budget
from chat_core.orchestration.session import SessionBinder
from chat_core.providers.llama_engine import EngineHandle


TITLE_ELLIPSIS = "..."


def make_title(prompt: str, max_length: int) -> str:
    """用首条用户消息生成会话标题，超长时截断并追加省略号。"""
    text = " ".join(prompt.split())
    if len(text) <= max_length:
        return text
    return text[:max_length] + TITLE_ELLIPSIS


def sampling_from_settings(settings, stop: List[str]) -> SamplingParams:
    extra = list(getattr(settings, "extra_stop_sequences", None) or [])
    return SamplingParams(
        temperature=settings.temperature,
        top_k=settings.top_k,
        top_p=settings.top_p,
        repeat_penalty=settings.repeat_penalty,
        stop=list(stop) + [s for s in extra if s not in stop],
    )


class GenerationPipeline:
    def __init__(self, store: ConversationStore, settings):
        self._store = store
        self._settings = settings
        self._handle: Optional[EngineHandle] = None
        self._binder: Optional[SessionBinder] = None
        self._sampling: Optional[SamplingParams] = None
        self._guard = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None
        self._closing = False

    def attach(self, handle: EngineHandle, binder: SessionBinder) -> None:
        """引擎就绪后由编排器调用。"""
        self._handle = handle
        self._binder = binder
        self._sampling = sampling_from_settings(self._settings, handle.profile.stop)

    def detach(self) -> None:
        self._handle = None
        self._binder = None

    @property
    def ready(self) -> bool:
        return self._handle is not None and not self._handle.closed and self._binder is not None

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    @property
    def sampling(self) -> Optional[SamplingParams]:
        return self._sampling

    def run(
        self,
        conversation_id: str,
        prompt: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[GenerationEvent]:
        """执行一次生成，逐个产出事件。

        Args:
            conversation_id: 目标会话 ID
            prompt: 用户输入
            cancel_event: 可选的取消信号，置位后在下一个生成片段处停止

        Yields:
            若干 "token"，可能一个 "error"，最后恰好一个 "done"
        """

        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
        }

        # 1. 软拒绝：引擎未就绪 / 已有生成进行中 / 空输入
        if not self.ready:
            self._log(logging.INFO, "Rejected generation: engine not ready", log_ctx)
            yield GenerationEvent.done(conversation_id)
            return
        if not prompt or not prompt.strip():
            self._log(logging.INFO, "Rejected generation: empty prompt", log_ctx)
            yield GenerationEvent.done(conversation_id)
            return
        if not self._guard.acquire(blocking=False):
            self._log(logging.INFO, "Rejected generation: busy", log_ctx)
            yield GenerationEvent.done(conversation_id)
            return

        cancel_event = cancel_event or threading.Event()
        self._cancel_event = cancel_event
        try:
            if self._closing:
                self._log(logging.INFO, "Rejected generation: shutting down", log_ctx)
                yield GenerationEvent.done(conversation_id)
                return
            yield from self._run_guarded(conversation_id, prompt, cancel_event, log_ctx)
        finally:
            self._cancel_event = None
            self._guard.release()

    def cancel(self) -> bool:
        """请求停止进行中的生成；没有进行中的生成时返回 False。"""
        event = self._cancel_event
        if event is None:
            return False
        event.set()
        return True

    def drain(self, timeout: float) -> bool:
        """等待进行中的生成结束并卸下引擎，之后的请求都会被软拒绝。

        成功时持有生成锁不再释放；超时返回 False，引擎保持挂载。
        """
        self._closing = True
        self.cancel()
        if not self._guard.acquire(timeout=max(0.0, timeout)):
            return False
        self.detach()
        return True

    def _run_guarded(
        self,
        conversation_id: str,
        prompt: str,
        cancel_event: Optional[threading.Event],
        log_ctx: Dict[str, Any],
    ) -> Iterator[GenerationEvent]:
        start_time = time.time()
        handle = self._handle
        binder = self._binder
        sampling = self._sampling
        if handle is None or binder is None or sampling is None:
            # 引擎在拿到锁之后被卸下（退出过程中）
            self._log(logging.INFO, "Rejected generation: engine detached", log_ctx)
            yield GenerationEvent.done(conversation_id)
            return

        # 2. 读取会话，不存在则静默中止
        try:
            conv = self._store.load(conversation_id)
        except ValidationError:
            conv = None
        except BusinessError as e:
            self._log(logging.ERROR, "Failed to load conversation", log_ctx, error=str(e), code=e.code)
            yield GenerationEvent.error(e.message, conversation_id)
            yield GenerationEvent.done(conversation_id)
            return
        if conv is None:
            self._log(logging.INFO, "Conversation not found, aborting", log_ctx)
            yield GenerationEvent.done(conversation_id)
            return

        # 3. 计算上下文预算
        budget = compute_budget(
            conv.messages,
            len(prompt),
            handle.context_size,
            self._settings.chars_per_token,
            history_fraction=self._settings.history_fraction,
            answer_margin=self._settings.answer_margin,
            min_answer=self._settings.min_answer_tokens,
        )
        if budget.dropped:
            self._log(
                logging.INFO,
                "Truncated context",
                log_ctx,
                budget_chars=budget.budget_chars,
                kept=len(budget.trimmed_history),
                dropped=budget.dropped,
            )

        # 4. 绑定共享推理上下文
        session = binder.ensure_bound(conv.id, budget.trimmed_history)

        # 5. 先持久化用户消息，生成失败或进程崩溃也不会丢输入
        # 6. 首轮对话用输入生成标题
        try:
            stored = self._store.append_message(
                conv.id,
                Message(role="user", content=prompt),
                title_if_first=make_title(prompt, self._settings.title_max_length),
            )
        except PersistenceFailure as e:
            self._log(logging.ERROR, "Failed to store user message", log_ctx, error=str(e), code=e.code)
            yield GenerationEvent.error(e.message, conv.id)
            yield GenerationEvent.done(conv.id)
            return
        if stored is None:
            self._log(logging.INFO, "Conversation deleted before generation, aborting", log_ctx)
            yield GenerationEvent.done(conv.id)
            return
        self._log(logging.INFO, "Stored user message", log_ctx, message_index=len(stored.messages) - 1)

        # 7. 流式生成
        self._log(
            logging.INFO,
            "Calling engine (stream)",
            log_ctx,
            history_messages=len(session.history),
            max_tokens=budget.max_answer_tokens,
        )
        pieces: List[str] = []
        try:
            for piece in session.prompt_stream(prompt, sampling, budget.max_answer_tokens, cancel_event):
                pieces.append(piece)
                yield GenerationEvent.token(piece, conv.id)
        except Exception as e:
            # 9. 单次生成失败不影响引擎，已生成的部分不落盘
            self._log(
                logging.ERROR,
                "Generation failed",
                log_ctx,
                error=str(e),
                discarded_chars=sum(len(p) for p in pieces),
            )
            yield GenerationEvent.error(str(e) or type(e).__name__, conv.id)
            yield GenerationEvent.done(conv.id)
            return

        response = "".join(pieces)
        cancelled = cancel_event is not None and cancel_event.is_set()
        if cancelled:
            self._log(logging.INFO, "Generation cancelled", log_ctx, partial_chars=len(response))
            if not response:
                yield GenerationEvent.done(conv.id)
                return

        # 8. 在存储锁内重新读取后追加回答，避免覆盖第 5 步之后的外部修改
        try:
            fresh = self._store.append_message(conv.id, Message(role="assistant", content=response))
            if fresh is None:
                self._log(logging.INFO, "Conversation deleted during generation, answer dropped", log_ctx)
                yield GenerationEvent.done(conv.id)
                return
        except PersistenceFailure as e:
            self._log(logging.ERROR, "Failed to store assistant message", log_ctx, error=str(e), code=e.code)
            yield GenerationEvent.error(e.message, conv.id)
            yield GenerationEvent.done(conv.id)
            return

        self._log(
            logging.INFO,
            "Completed generation",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            response_chars=len(response),
            cancelled=cancelled,
        )
        yield GenerationEvent.done(conv.id)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        log_event(level, message, log_ctx, **fields)
