"""测试编排器：启动、事件通道、删除与退出。"""

import threading
import time

import pytest

from chat_core.config.settings import Settings
from chat_core.domain.models import EngineState
from chat_core.orchestration.orchestrator import Orchestrator


class FakeBackend:
    def __init__(self, pieces=("Hi", " there")):
        self.pieces = list(pieces)
        self.gate = None
        self.closed = False
        self.calls = 0

    def create_chat_completion(self, messages, **kwargs):
        self.calls += 1
        gate = self.gate

        def gen():
            for p in self.pieces:
                if gate is not None:
                    gate.wait(5)
                yield {"choices": [{"delta": {"content": p}}]}

        return gen()

    def reset(self):
        pass

    def close(self):
        self.closed = True


class Factory:
    def __init__(self, fail=False):
        self.fail = fail
        self.backend = FakeBackend()

    def __call__(self, **kwargs):
        if self.fail:
            raise RuntimeError("no backend")
        return self.backend


def _settings(tmp_path):
    model = tmp_path / "model.gguf"
    model.write_bytes(b"GGUF")
    return Settings(
        model_path=str(model),
        storage_root=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
        system_prompt="You are a test.",
        shutdown_timeout=2.0,
    )


@pytest.fixture
def orch(tmp_path):
    factory = Factory()
    o = Orchestrator(_settings(tmp_path), factory=factory)
    events = []
    o.channel.subscribe(events.append)
    o.start()
    yield o, factory.backend, events
    o.shutdown()


def gen_kinds(events):
    return [e.kind for e in events if e.kind != "history"]


def test_start_creates_first_conversation_and_loads_engine(orch):
    o, _, _ = orch
    assert o.engine_state is EngineState.READY
    history = o.get_history()
    assert len(history) == 1
    # 已有会话时不再自动创建
    o.start(load_engine=False)
    assert len(o.get_history()) == 1


def test_start_generation_streams_through_channel(orch):
    o, _, events = orch
    conv_id = o.get_history()[0].id
    o.start_generation("hello", conv_id).join(5)
    assert gen_kinds(events) == ["token", "token", "done"]
    assert "".join(e.text for e in events if e.kind == "token") == "Hi there"
    history_events = [e for e in events if e.kind == "history"]
    # 保存用户消息和保存回答各一次
    assert len(history_events) == 2
    assert history_events[-1].history[0]["title"] == "hello"
    assert [m.content for m in o.get_conversation(conv_id).messages] == ["hello", "Hi there"]


def test_second_generation_while_busy_only_gets_done(orch):
    o, backend, events = orch
    conv_id = o.get_history()[0].id
    backend.gate = threading.Event()
    first = o.start_generation("one", conv_id)
    # 等第一路拿到锁
    for _ in range(100):
        if o.pipeline.busy:
            break
        time.sleep(0.01)
    assert o.pipeline.busy
    o.start_generation("two", conv_id).join(5)
    assert gen_kinds(events) == ["done"]
    backend.gate.set()
    first.join(5)
    assert gen_kinds(events) == ["done", "token", "token", "done"]
    assert backend.calls == 1


def test_stop_generation_cancels_stream(orch):
    o, backend, events = orch
    conv_id = o.get_history()[0].id
    backend.gate = threading.Event()
    worker = o.start_generation("one", conv_id)
    # 等到引擎开始流式输出，此时取消信号已就位
    for _ in range(100):
        if backend.calls:
            break
        time.sleep(0.01)
    assert o.stop_generation() is True
    backend.gate.set()
    worker.join(5)
    assert gen_kinds(events)[-1] == "done"
    assert "error" not in gen_kinds(events)
    assert o.stop_generation() is False


def test_deleting_bound_conversation_clears_binding(orch):
    o, _, events = orch
    conv_id = o.get_history()[0].id
    o.start_generation("hello", conv_id).join(5)
    assert o.binder.bound_conversation_id == conv_id

    remaining = o.delete_conversation(conv_id)
    assert remaining == []
    assert o.binder.bound_conversation_id is None
    assert events[-1].kind == "history" and events[-1].history == []

    events.clear()
    o.start_generation("hello again", conv_id).join(5)
    assert gen_kinds(events) == ["done"]


def test_deleting_other_conversation_keeps_binding(orch):
    o, _, _ = orch
    conv_id = o.get_history()[0].id
    other = o.create_conversation()
    o.start_generation("hello", conv_id).join(5)
    o.delete_conversation(other.id)
    assert o.binder.bound_conversation_id == conv_id


def test_failed_engine_soft_rejects(tmp_path):
    o = Orchestrator(_settings(tmp_path), factory=Factory(fail=True))
    events = []
    o.channel.subscribe(events.append)
    o.start()
    assert o.engine_state is EngineState.FAILED
    # 应用其余部分仍可用
    conv = o.create_conversation()
    o.start_generation("hello", conv.id).join(5)
    assert gen_kinds(events) == ["done"]
    assert o.get_conversation(conv.id).messages == []
    assert o.shutdown() is True


def test_background_engine_load(tmp_path):
    o = Orchestrator(_settings(tmp_path), factory=Factory())
    o.start(background=True)
    assert o.wait_until_loaded(5) is EngineState.READY
    o.shutdown()


def test_shutdown_releases_in_order_and_is_idempotent(tmp_path):
    factory = Factory()
    o = Orchestrator(_settings(tmp_path), factory=factory)
    o.start()
    conv_id = o.get_history()[0].id
    o.start_generation("hello", conv_id).join(5)
    session = o.binder.session
    assert o.shutdown() is True
    assert session.disposed
    assert factory.backend.closed
    assert not o.pipeline.ready
    assert o.shutdown() is True

    events = []
    o.channel.subscribe(events.append)
    assert o.start_generation("late", conv_id) is None
    assert gen_kinds(events) == ["done"]


def test_channel_queue_keeps_order(orch):
    o, _, _ = orch
    conv_id = o.get_history()[0].id
    o.channel.drain()
    o.start_generation("hello", conv_id).join(5)
    queued = [e for e in o.channel.drain() if e.kind != "history"]
    assert [e.kind for e in queued] == ["token", "token", "done"]


def test_invalid_ids_behave_as_missing(orch):
    o, _, _ = orch
    assert o.get_conversation("../etc/passwd") is None
    assert len(o.delete_conversation("not valid")) == 1


class TrackingBackend(FakeBackend):
    """记录 close() 时是否仍有生成在使用上下文。"""

    def __init__(self):
        super().__init__()
        self.active = False
        self.closed_while_active = None

    def create_chat_completion(self, messages, **kwargs):
        inner = super().create_chat_completion(messages, **kwargs)

        def gen():
            self.active = True
            try:
                yield from inner
            finally:
                self.active = False

        return gen()

    def close(self):
        self.closed_while_active = self.active
        super().close()


def test_shutdown_waits_for_generation_started_back_to_back(tmp_path):
    factory = Factory()
    factory.backend = TrackingBackend()
    o = Orchestrator(_settings(tmp_path), factory=factory)
    o.start()
    backend = factory.backend
    backend.gate = threading.Event()
    conv_id = o.get_history()[0].id

    first = o.start_generation("one", conv_id)
    second = o.start_generation("two", conv_id)
    for _ in range(100):
        if backend.active:
            break
        time.sleep(0.01)
    assert backend.active

    result = []
    closer = threading.Thread(target=lambda: result.append(o.shutdown(timeout=5)))
    closer.start()
    time.sleep(0.1)
    # 生成仍在进行，引擎不能被关闭
    assert not backend.closed
    backend.gate.set()
    closer.join(5)

    assert result == [True]
    assert backend.closed
    assert backend.closed_while_active is False
    assert not first.is_alive() and not second.is_alive()


def test_shutdown_reports_timeout_while_generation_is_stuck(tmp_path):
    factory = Factory()
    o = Orchestrator(_settings(tmp_path), factory=factory)
    o.start()
    backend = factory.backend
    backend.gate = threading.Event()
    worker = o.start_generation("one", o.get_history()[0].id)
    for _ in range(100):
        if backend.calls:
            break
        time.sleep(0.01)

    assert o.shutdown(timeout=0.1) is False
    assert not backend.closed
    backend.gate.set()
    worker.join(5)
