"""编排器：进程内唯一的引擎句柄、会话绑定、生成锁与事件通道都挂在这里。

启动时构造一次，再注入到各个请求处理入口（见 api.service），
避免隐藏的全局状态，同时保持"每样只有一个"的语义。
"""

import atexit
import logging
import signal
import threading
import time
from typing import List, Optional

from chat_core.config.settings import settings as default_settings
from chat_core.domain.conversation import Conversation, ConversationSummary
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import EngineState, GenerationEvent
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.orchestration.budget import history_budget_chars
from chat_core.orchestration.events import EventChannel
from chat_core.orchestration.pipeline import GenerationPipeline
from chat_core.orchestration.session import SessionBinder
from chat_core.prompts import load_system_prompt
from chat_core.providers import create_engine_loader
from chat_core.providers.llama_engine import BackendFactory, EngineHandle, EngineLoader


class Orchestrator:
    def __init__(
        self,
        settings=None,
        store: Optional[JsonConversationStore] = None,
        loader: Optional[EngineLoader] = None,
        factory: Optional[BackendFactory] = None,
        channel: Optional[EventChannel] = None,
    ):
        self._settings = settings or default_settings
        self._store = store or JsonConversationStore(root=self._settings.storage_root)
        self._loader = loader or create_engine_loader(self._settings, factory=factory)
        self._channel = channel or EventChannel()
        self._pipeline = GenerationPipeline(self._store, self._settings)
        self._binder: Optional[SessionBinder] = None
        self._handle: Optional[EngineHandle] = None
        self._system_prompt = self._settings.system_prompt or load_system_prompt(self._settings.prompt_locale)

        self._workers: List[threading.Thread] = []
        self._engine_thread: Optional[threading.Thread] = None
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False
        self._shutdown_done = threading.Event()

        self._store.subscribe(self._on_history_changed)
        self._store.on_delete(self._on_conversation_deleted)

    # ---- 属性 ----

    @property
    def store(self) -> JsonConversationStore:
        return self._store

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def pipeline(self) -> GenerationPipeline:
        return self._pipeline

    @property
    def binder(self) -> Optional[SessionBinder]:
        return self._binder

    @property
    def engine_state(self) -> EngineState:
        return self._loader.state

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    # ---- 启动 ----

    def start(self, load_engine: bool = True, background: bool = False) -> None:
        """保证至少有一个会话，然后加载引擎。

        background=True 时引擎在后台线程加载，展示层可以先显示；
        加载完成前到达的生成请求会被软拒绝。
        """
        if not self._store.list():
            self._store.create()
        if not load_engine:
            return
        if background:
            self._engine_thread = threading.Thread(target=self.initialize_engine, name="engine-loader", daemon=True)
            self._engine_thread.start()
        else:
            self.initialize_engine()

    def initialize_engine(self) -> Optional[EngineHandle]:
        # 调用方保证只初始化一次
        if self._loader.state is not EngineState.UNINITIALIZED:
            return self._handle
        handle = self._loader.initialize()
        if handle is None:
            return None
        if self._shutdown_started:
            # 加载期间已开始退出，直接释放
            handle.close()
            return None
        self._handle = handle
        self._binder = SessionBinder(
            handle.backend,
            self._system_prompt,
            max_history_chars=history_budget_chars(
                handle.context_size, self._settings.chars_per_token, self._settings.history_fraction
            ),
        )
        self._pipeline.attach(handle, self._binder)
        return handle

    def wait_until_loaded(self, timeout: Optional[float] = None) -> EngineState:
        if self._engine_thread is not None:
            self._engine_thread.join(timeout)
        return self._loader.state

    # ---- 请求入口 ----

    def start_generation(self, prompt: str, conversation_id: str) -> Optional[threading.Thread]:
        """发起一次生成（fire-and-forget），结果通过事件通道推送。"""
        if self._shutdown_started:
            self._channel.publish(GenerationEvent.done(conversation_id))
            return None
        worker = threading.Thread(
            target=self._run_generation,
            args=(conversation_id, prompt),
            name="generation",
            daemon=True,
        )
        # 是否真正拿到生成锁由流水线决定，这里只记录线程，退出时统一等待
        self._workers = [t for t in self._workers if t.is_alive()]
        self._workers.append(worker)
        worker.start()
        return worker

    def stop_generation(self) -> bool:
        return self._pipeline.cancel()

    def get_history(self) -> List[ConversationSummary]:
        return self._store.list()

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            return self._store.load(conversation_id)
        except ValidationError:
            # 非法 id 等同于不存在
            return None

    def create_conversation(self) -> Conversation:
        return self._store.create()

    def rename_conversation(self, conversation_id: str, title: str) -> Optional[Conversation]:
        return self._store.rename(conversation_id, title)

    def delete_conversation(self, conversation_id: str) -> List[ConversationSummary]:
        try:
            self._store.delete(conversation_id)
        except ValidationError as e:
            log_event(logging.WARNING, "Ignored delete of invalid conversation id", {}, error=e.message)
        return self._store.list()

    def _run_generation(self, conversation_id: str, prompt: str) -> None:
        done_sent = False
        try:
            for event in self._pipeline.run(conversation_id, prompt):
                self._channel.publish(event)
                done_sent = done_sent or event.kind == "done"
        except Exception as e:
            log_event(logging.ERROR, "Generation worker crashed", {"conversation_id": conversation_id}, error=str(e))
            if not done_sent:
                self._channel.publish(GenerationEvent.error(str(e) or type(e).__name__, conversation_id))
        finally:
            if not done_sent:
                self._channel.publish(GenerationEvent.done(conversation_id))

    # ---- 订阅回调 ----

    def _on_history_changed(self, summaries: List[ConversationSummary]) -> None:
        self._channel.publish(GenerationEvent.history_update([s.to_dict() for s in summaries]))

    def _on_conversation_deleted(self, conversation_id: str) -> None:
        if self._binder is not None:
            self._binder.clear(conversation_id)

    # ---- 退出 ----

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """按依赖顺序释放资源：进行中的生成 → 会话 → 上下文/模型。

        重复调用是空操作。返回 False 表示在 timeout 内没有完成清理。
        """
        with self._shutdown_lock:
            if self._shutdown_started:
                return self._shutdown_done.is_set()
            self._shutdown_started = True

        timeout = self._settings.shutdown_timeout if timeout is None else timeout
        log_event(logging.INFO, "Shutting down", {}, timeout=timeout)
        self._pipeline.cancel()

        deadline = time.monotonic() + timeout
        cleaner = threading.Thread(target=self._dispose_all, args=(deadline,), name="shutdown", daemon=True)
        cleaner.start()
        cleaner.join(max(0.0, deadline - time.monotonic()))
        if not self._shutdown_done.is_set():
            log_event(logging.WARNING, "Shutdown timed out", {}, timeout=timeout)
            return False
        return True

    def _dispose_all(self, deadline: float) -> None:
        if self._engine_thread is not None and self._engine_thread.is_alive():
            self._engine_thread.join(max(0.0, deadline - time.monotonic()))
        # 拿到生成锁才说明没有线程还在使用共享上下文
        if not self._pipeline.drain(deadline - time.monotonic()):
            log_event(logging.WARNING, "Generation still running, engine left open", {})
            return
        for worker in list(self._workers):
            worker.join(max(0.0, deadline - time.monotonic()))
        if self._binder is not None:
            self._binder.dispose()
        if self._handle is not None:
            self._handle.close()
        self._shutdown_done.set()
        log_event(logging.INFO, "Shutdown complete", {})

    def install_signal_handlers(self) -> None:
        """注册 SIGINT/SIGTERM 与 atexit 清理，只能在主线程调用。"""

        def handler(signum, frame):
            self.shutdown()
            raise SystemExit(0)

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)
        atexit.register(self.shutdown)
