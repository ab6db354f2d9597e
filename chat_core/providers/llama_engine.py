"""llama.cpp 推理引擎加载器。

本模块负责：

1. 以最大 GPU 卸载加载 GGUF 模型，创建唯一的共享推理上下文。
2. GPU 加载失败时记录日志，并用同一模型文件回退到纯 CPU 加载。
3. 两条路径都失败时把引擎标记为 FAILED，而不是让进程崩溃，
   之后的生成请求会被软拒绝，应用其余部分照常可用。

回退策略由 load_with_fallback 显式给出三态结果（GPU_OK / CPU_FALLBACK_OK /
BOTH_FAILED），方便单独测试。
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from chat_core.domain.exceptions import EngineLoadFailure
from chat_core.domain.models import EngineState, LoadOutcome
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.base import InferenceBackend
from chat_core.providers.registry import ModelProfile, get_model_profile


BackendFactory = Callable[..., InferenceBackend]


def llama_cpp_factory(**kwargs: Any) -> InferenceBackend:
    """默认工厂：构造 llama_cpp.Llama。"""
    # 延迟导入，加载原生库的开销只在真正加载模型时发生
    from llama_cpp import Llama

    return Llama(**kwargs)


@dataclass
class LoadResult:
    outcome: LoadOutcome
    backend: Optional[InferenceBackend]
    errors: List[str] = field(default_factory=list)


def load_with_fallback(
    gpu_attempt: Callable[[], InferenceBackend],
    cpu_attempt: Callable[[], InferenceBackend],
) -> LoadResult:
    """先尝试 GPU，失败后尝试 CPU，返回三态结果。"""

    errors: List[str] = []
    try:
        return LoadResult(LoadOutcome.GPU_OK, gpu_attempt(), errors)
    except Exception as e:
        errors.append(f"gpu: {e}")
        log_event(logging.WARNING, "GPU load failed, falling back to CPU", {}, error=str(e))
    try:
        return LoadResult(LoadOutcome.CPU_FALLBACK_OK, cpu_attempt(), errors)
    except Exception as e:
        errors.append(f"cpu: {e}")
        log_event(logging.ERROR, "CPU load failed", {}, error=str(e))
    return LoadResult(LoadOutcome.BOTH_FAILED, None, errors)


@dataclass
class EngineHandle:
    """加载完成的引擎句柄：一个模型 + 一个固定容量的共享上下文。"""

    backend: InferenceBackend
    outcome: LoadOutcome
    context_size: int
    batch_size: int
    profile: ModelProfile
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.backend.close()


class EngineLoader:
    """进程内只调用一次 initialize() 的引擎加载器。"""

    def __init__(self, settings, factory: Optional[BackendFactory] = None):
        self._settings = settings
        self._factory = factory or llama_cpp_factory
        self._profile = get_model_profile(settings.model_family)
        self._state = EngineState.UNINITIALIZED
        self._handle: Optional[EngineHandle] = None
        self._last_errors: List[str] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def handle(self) -> Optional[EngineHandle]:
        return self._handle

    @property
    def last_errors(self) -> List[str]:
        return list(self._last_errors)

    @property
    def is_ready(self) -> bool:
        return self._state is EngineState.READY and self._handle is not None

    def initialize(self) -> Optional[EngineHandle]:
        """加载模型并创建共享上下文。

        Returns:
            成功时返回 EngineHandle；两条路径都失败时返回 None（状态为 FAILED）。

        Raises:
            EngineLoadFailure: 重复调用时抛出。
        """

        with self._lock:
            if self._state is not EngineState.UNINITIALIZED:
                raise EngineLoadFailure(
                    code="ENGINE_ALREADY_INITIALIZED",
                    message=f"initialize() called in state {self._state.value}",
                )
            start = time.time()
            log_ctx = {"model_path": self._settings.model_path, "model_family": self._profile.family}

            model_path = Path(self._settings.model_path).expanduser()
            if not model_path.is_file():
                self._last_errors = [f"model file not found: {model_path}"]
                self._set_state(EngineState.FAILED, log_ctx)
                log_event(logging.ERROR, "Engine load failed", log_ctx, errors=self._last_errors)
                return None

            result = load_with_fallback(
                lambda: self._attempt(EngineState.LOADING_GPU, self._settings.gpu_layers, log_ctx),
                lambda: self._attempt(EngineState.LOADING_CPU, 0, log_ctx),
            )
            self._last_errors = result.errors
            if result.backend is None:
                self._set_state(EngineState.FAILED, log_ctx)
                log_event(logging.ERROR, "Engine load failed", log_ctx, errors=result.errors)
                return None

            self._handle = EngineHandle(
                backend=result.backend,
                outcome=result.outcome,
                context_size=self._settings.context_size,
                batch_size=self._settings.batch_size,
                profile=self._profile,
            )
            self._set_state(EngineState.READY, log_ctx)
            log_event(
                logging.INFO,
                "Engine ready",
                log_ctx,
                outcome=result.outcome.value,
                context_size=self._settings.context_size,
                elapsed_seconds=round(time.time() - start, 2),
            )
            return self._handle

    def _attempt(self, state: EngineState, gpu_layers: int, log_ctx: dict) -> InferenceBackend:
        self._set_state(state, log_ctx)
        return self._factory(
            model_path=str(Path(self._settings.model_path).expanduser()),
            n_gpu_layers=gpu_layers,
            n_ctx=self._settings.context_size,
            n_batch=self._settings.batch_size,
            chat_format=self._profile.chat_format,
            verbose=False,
        )

    def _set_state(self, state: EngineState, log_ctx: dict) -> None:
        self._state = state
        log_event(logging.INFO, "Engine state changed", log_ctx, state=state.value)
