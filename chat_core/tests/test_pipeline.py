"""测试单次生成流水线。"""

import threading

import pytest

from chat_core.config.settings import Settings
from chat_core.domain.exceptions import PersistenceFailure
from chat_core.domain.models import LoadOutcome, Message
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.orchestration.pipeline import GenerationPipeline, make_title
from chat_core.orchestration.session import SessionBinder
from chat_core.providers.llama_engine import EngineHandle
from chat_core.providers.registry import CHATML_PROFILE


class FakeBackend:
    """模拟 llama.cpp 的流式输出，可在第 fail_at 段时抛错。"""

    def __init__(self, pieces=("Hel", "lo", "!"), fail_at=None):
        self.pieces = list(pieces)
        self.fail_at = fail_at
        self.calls = []
        self.resets = 0

    def create_chat_completion(self, messages, **kwargs):
        self.calls.append({"messages": [dict(m) for m in messages], **kwargs})
        fail_at = self.fail_at

        def gen():
            for i, p in enumerate(self.pieces):
                if fail_at is not None and i == fail_at:
                    raise RuntimeError("llama_decode returned -1")
                yield {"choices": [{"delta": {"content": p}, "finish_reason": None}]}
            yield {"choices": [{"delta": {}, "finish_reason": "stop"}]}

        return gen()

    def reset(self):
        self.resets += 1

    def close(self):
        pass


@pytest.fixture
def env(tmp_path):
    settings = Settings(
        model_path=str(tmp_path / "model.gguf"),
        storage_root=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
        title_max_length=10,
        extra_stop_sequences=["###"],
    )
    store = JsonConversationStore(root=tmp_path / "data")
    backend = FakeBackend()
    handle = EngineHandle(
        backend=backend,
        outcome=LoadOutcome.GPU_OK,
        context_size=4096,
        batch_size=512,
        profile=CHATML_PROFILE,
    )
    binder = SessionBinder(backend, "sys")
    pipeline = GenerationPipeline(store, settings)
    pipeline.attach(handle, binder)
    return pipeline, store, backend, binder


def kinds(events):
    return [e.kind for e in events]


def test_streams_tokens_then_done_and_persists(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    events = list(pipeline.run(conv.id, "hello"))
    assert kinds(events) == ["token", "token", "token", "done"]
    assert "".join(e.text for e in events if e.kind == "token") == "Hello!"
    saved = store.load(conv.id)
    assert saved.messages == [
        Message(role="user", content="hello"),
        Message(role="assistant", content="Hello!"),
    ]
    assert saved.title == "hello"
    assert not pipeline.busy


def test_sampling_and_budget_are_passed_to_engine(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    list(pipeline.run(conv.id, "hi"))
    call = backend.calls[0]
    assert call["stop"] == ["<|im_end|>", "<|im_start|>", "###"]
    assert call["temperature"] == 0.7
    assert call["top_k"] == 40
    # 4096 - ceil(2/3) - 100
    assert call["max_tokens"] == 3995


def test_long_first_prompt_is_truncated_into_title(env):
    pipeline, store, _, _ = env
    conv = store.create()
    list(pipeline.run(conv.id, "tell me about the weather"))
    assert store.load(conv.id).title == "tell me ab..."
    # 之后的轮次不改标题
    list(pipeline.run(conv.id, "something else"))
    assert store.load(conv.id).title == "tell me ab..."


def test_make_title():
    assert make_title("hello", 30) == "hello"
    assert make_title("a" * 31, 30) == "a" * 30 + "..."
    assert make_title("  multi\nline   prompt ", 30) == "multi line prompt"


def test_busy_request_is_soft_rejected(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    other = store.create()

    first = pipeline.run(conv.id, "first")
    assert next(first).kind == "token"
    assert pipeline.busy

    rejected = list(pipeline.run(other.id, "second"))
    assert kinds(rejected) == ["done"]
    assert store.load(other.id).messages == []

    rest = list(first)
    assert kinds(rest) == ["token", "token", "done"]
    assert len(backend.calls) == 1
    assert store.load(conv.id).messages[-1].content == "Hello!"
    assert not pipeline.busy


def test_not_ready_is_soft_rejected(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    pipeline = GenerationPipeline(store, Settings(storage_root=str(tmp_path), log_dir=str(tmp_path / "logs")))
    conv = store.create()
    assert kinds(pipeline.run(conv.id, "hello")) == ["done"]
    assert store.load(conv.id).messages == []


def test_empty_prompt_is_soft_rejected(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    assert kinds(pipeline.run(conv.id, "   ")) == ["done"]
    assert backend.calls == []


def test_missing_conversation_aborts_silently(env):
    pipeline, store, backend, binder = env
    assert kinds(pipeline.run("c-nope", "hello")) == ["done"]
    assert kinds(pipeline.run("not a valid id", "hello")) == ["done"]
    assert backend.calls == []
    assert binder.rebind_count == 0
    assert not pipeline.busy


def test_stream_failure_reports_error_and_keeps_user_message(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    backend.fail_at = 2
    events = list(pipeline.run(conv.id, "hello"))
    assert kinds(events) == ["token", "token", "error", "done"]
    assert "llama_decode" in events[2].message
    # 用户输入已落盘，部分回答被丢弃
    assert store.load(conv.id).messages == [Message(role="user", content="hello")]
    assert not pipeline.busy

    # 引擎仍可用于下一次请求
    backend.fail_at = None
    events = list(pipeline.run(conv.id, "again"))
    assert kinds(events)[-1] == "done"
    assert "error" not in kinds(events)
    assert store.load(conv.id).messages[-1] == Message(role="assistant", content="Hello!")


def test_cancel_persists_partial_answer(env):
    pipeline, store, _, _ = env
    conv = store.create()
    cancel = threading.Event()
    events = []
    for event in pipeline.run(conv.id, "hello", cancel):
        events.append(event)
        if event.kind == "token":
            assert pipeline.cancel() is True
    assert kinds(events) == ["token", "done"]
    assert store.load(conv.id).messages[-1] == Message(role="assistant", content="Hel")
    assert pipeline.cancel() is False


def test_answer_is_appended_to_fresh_copy(env):
    pipeline, store, _, _ = env
    conv = store.create()
    gen = pipeline.run(conv.id, "hello")
    next(gen)
    # 流式过程中外部改名
    store.rename(conv.id, "Renamed")
    list(gen)
    saved = store.load(conv.id)
    assert saved.title == "Renamed"
    assert [m.role for m in saved.messages] == ["user", "assistant"]


def test_conversation_deleted_mid_stream_drops_answer(env):
    pipeline, store, _, _ = env
    conv = store.create()
    gen = pipeline.run(conv.id, "hello")
    next(gen)
    store.delete(conv.id)
    assert kinds(gen) == ["token", "token", "done"]
    assert store.load(conv.id) is None


def test_persistence_failure_is_surfaced(env, monkeypatch):
    pipeline, store, _, _ = env
    conv = store.create()

    def failing_save(c):
        raise PersistenceFailure(code="STORE_WRITE_ERROR", message="disk full")

    monkeypatch.setattr(store, "save", failing_save)
    events = list(pipeline.run(conv.id, "hello"))
    assert kinds(events) == ["error", "done"]
    assert events[0].message == "disk full"
    assert not pipeline.busy


def test_guard_released_when_consumer_stops_early(env):
    pipeline, store, _, _ = env
    conv = store.create()
    gen = pipeline.run(conv.id, "hello")
    next(gen)
    assert pipeline.busy
    gen.close()
    assert not pipeline.busy


def test_consecutive_prompts_rebind_once(env):
    pipeline, store, backend, binder = env
    a = store.create()
    b = store.create()
    list(pipeline.run(a.id, "first"))
    assert binder.rebind_count == 1

    for i in range(3):
        list(pipeline.run(b.id, f"prompt {i}"))
    assert binder.rebind_count == 2
    # 同一会话的后续轮次由会话自身历史提供上下文，不重放存储中的历史
    last = backend.calls[-1]["messages"]
    assert [m["role"] for m in last] == ["system", "user", "assistant", "user", "assistant", "user"]


def test_rebind_replays_trimmed_history(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    conv.messages = [
        Message(role="user", content="a" * 3000),
        Message(role="assistant", content="b" * 3000),
        Message(role="user", content="c" * 3000),
        Message(role="assistant", content="d" * 10),
    ]
    store.save(conv)
    list(pipeline.run(conv.id, "next"))
    sent = [m["content"][:1] for m in backend.calls[0]["messages"]]
    assert sent == ["s", "b", "c", "d", "n"]


def test_session_history_matches_store_after_failure(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    backend.fail_at = 1
    list(pipeline.run(conv.id, "hello"))
    backend.fail_at = None
    list(pipeline.run(conv.id, "again"))
    sent = backend.calls[-1]["messages"]
    assert [(m["role"], m["content"]) for m in sent] == [
        ("system", "sys"),
        ("user", "hello"),
        ("user", "again"),
    ]
    assert [m.role for m in store.load(conv.id).messages] == ["user", "user", "assistant"]


def test_session_history_matches_store_after_empty_cancel(env):
    pipeline, store, backend, _ = env
    conv = store.create()
    cancel = threading.Event()
    cancel.set()
    assert kinds(pipeline.run(conv.id, "hello", cancel)) == ["done"]
    assert store.load(conv.id).messages == [Message(role="user", content="hello")]
    list(pipeline.run(conv.id, "again"))
    sent = backend.calls[-1]["messages"]
    assert [m["role"] for m in sent] == ["system", "user", "user"]


def test_drain_waits_for_running_generation(env):
    pipeline, store, _, _ = env
    conv = store.create()
    gen = pipeline.run(conv.id, "hello")
    next(gen)
    # 生成仍持有锁时无法完成
    assert pipeline.drain(0.05) is False
    # drain 已请求取消，剩余部分很快结束
    assert kinds(gen) == ["done"]
    assert store.load(conv.id).messages[-1] == Message(role="assistant", content="Hel")
    assert pipeline.drain(1) is True
    assert not pipeline.ready
    assert kinds(pipeline.run(conv.id, "late")) == ["done"]


def test_detached_engine_after_ready_check_only_gets_done(tmp_path, monkeypatch):
    store = JsonConversationStore(root=tmp_path)
    pipeline = GenerationPipeline(store, Settings(storage_root=str(tmp_path), log_dir=str(tmp_path / "logs")))
    monkeypatch.setattr(GenerationPipeline, "ready", property(lambda self: True))
    conv = store.create()
    assert kinds(pipeline.run(conv.id, "hello")) == ["done"]
    assert store.load(conv.id).messages == []
    assert not pipeline.busy
