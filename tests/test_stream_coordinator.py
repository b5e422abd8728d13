from threading import Event, Thread

import pytest

from src.linkchat.domain.chat_models import ChatMessage, GenerationConfig, Role, StreamState
from src.linkchat.domain.errors import Conflict, InvalidInput, ProviderFailure
from src.linkchat.infrastructure.session_store import SessionContext
from src.linkchat.services.conversation import get_conversation
from src.linkchat.services.streaming import StreamCoordinator
from .utils import FakeCompletionClient, wait_for


def _ctx():
    return SessionContext("test-session")


def _finished(coordinator, ctx):
    snap = coordinator.snapshot(ctx)
    return snap is not None and snap.complete


def test_begin_records_stream_without_starting_generation():
    fake = FakeCompletionClient()
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()

    snap = coordinator.begin(ctx, "hi", GenerationConfig())

    assert snap.state == StreamState.NOT_STARTED
    assert snap.started is False and snap.complete is False
    assert fake.calls == []
    assert [(m.role, m.content) for m in get_conversation(ctx).list()] == [(Role.USER, "hi")]


def test_begin_rejects_blank_prompt():
    coordinator = StreamCoordinator(FakeCompletionClient())
    with pytest.raises(InvalidInput):
        coordinator.begin(_ctx(), " ", GenerationConfig())


def test_poll_without_stream_returns_none():
    assert StreamCoordinator(FakeCompletionClient()).poll(_ctx()) is None


def test_first_poll_starts_generation_and_partial_text_is_visible():
    release = Event()
    fake = FakeCompletionClient(fragments=["Hel", "lo"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "greet", GenerationConfig())

    first = coordinator.poll(ctx)
    assert first.started is True
    assert first.complete is False

    assert fake.first_fragment.wait(3)
    partial = coordinator.poll(ctx)
    assert partial.text == "Hel"
    assert partial.complete is False
    assert partial.state == StreamState.RUNNING

    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))
    final = coordinator.poll(ctx)
    assert final.text == "Hello"
    assert final.complete is True
    assert len(fake.calls) == 1


def test_many_concurrent_polls_start_one_task_and_commit_once():
    release = Event()
    fake = FakeCompletionClient(fragments=["a", "b", "c"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "go", GenerationConfig())

    threads = [Thread(target=coordinator.poll, args=(ctx,)) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))
    for _ in range(10):
        coordinator.poll(ctx)

    assert len(fake.calls) == 1
    replies = [m for m in get_conversation(ctx).list() if m.role == Role.ASSISTANT]
    assert [m.content for m in replies] == ["abc"]


def test_complete_is_never_seen_before_last_fragment():
    fake = FakeCompletionClient(fragments=[str(i) for i in range(50)])
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "count", GenerationConfig())
    expected = "".join(str(i) for i in range(50))

    seen_complete = []
    while not seen_complete:
        snap = coordinator.poll(ctx)
        if snap.complete:
            seen_complete.append(snap.text)
    assert seen_complete == [expected]


def test_window_excludes_prompt_and_uses_prior_turns():
    fake = FakeCompletionClient(fragments=["f"])
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    store = get_conversation(ctx)
    for role, text in ((Role.USER, "a"), (Role.ASSISTANT, "b"), (Role.USER, "c"), (Role.ASSISTANT, "d")):
        store.append(ChatMessage(role=role, content=text))

    coordinator.begin(ctx, "e", GenerationConfig(max_history_turns=1))
    coordinator.poll(ctx)
    assert wait_for(lambda: _finished(coordinator, ctx))

    prompt, window, _ = fake.calls[0]
    assert prompt == "e"
    assert window == [("USER", "c"), ("ASSISTANT", "d")]
    assert [m.content for m in store.list()] == ["a", "b", "c", "d", "e", "f"]


def test_commit_lands_after_prompt_even_if_log_grew():
    release = Event()
    fake = FakeCompletionClient(fragments=["x", "y"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "q", GenerationConfig())
    coordinator.poll(ctx)
    assert fake.first_fragment.wait(3)
    get_conversation(ctx).append(ChatMessage(role=Role.USER, content="later"))
    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))

    assert [m.content for m in get_conversation(ctx).list()] == ["q", "xy", "later"]


def test_second_begin_while_running_conflicts():
    release = Event()
    fake = FakeCompletionClient(fragments=["1", "2"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "first", GenerationConfig())
    coordinator.poll(ctx)
    assert fake.first_fragment.wait(3)

    with pytest.raises(Conflict):
        coordinator.begin(ctx, "second", GenerationConfig())

    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))
    assert len(fake.calls) == 1
    assert [m.content for m in get_conversation(ctx).list()] == ["first", "12"]


def test_completed_stream_is_replaced_by_next_begin():
    fake = FakeCompletionClient(fragments=["r"])
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "one", GenerationConfig())
    coordinator.poll(ctx)
    assert wait_for(lambda: _finished(coordinator, ctx))

    snap = coordinator.begin(ctx, "two", GenerationConfig())
    assert snap.prompt == "two"
    assert snap.state == StreamState.NOT_STARTED


def test_resubmitting_same_prompt_does_not_duplicate_user_turn():
    coordinator = StreamCoordinator(FakeCompletionClient())
    ctx = _ctx()
    coordinator.begin(ctx, "same", GenerationConfig())
    coordinator.begin(ctx, "same", GenerationConfig())
    assert [m.content for m in get_conversation(ctx).list()] == ["same"]


def test_failure_appends_error_and_commits_placeholder():
    fake = FakeCompletionClient(fragments=["partial "], error=ProviderFailure("upstream down"))
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "q", GenerationConfig())
    coordinator.poll(ctx)
    assert wait_for(lambda: _finished(coordinator, ctx))

    snap = coordinator.poll(ctx)
    assert snap.text == "partial Error: upstream down"
    messages = get_conversation(ctx).list()
    assert [(m.role, m.content) for m in messages] == [
        (Role.USER, "q"),
        (Role.ASSISTANT, "partial Error: upstream down"),
    ]


def test_empty_stream_is_reported_as_error():
    coordinator = StreamCoordinator(FakeCompletionClient(fragments=[]))
    ctx = _ctx()
    coordinator.begin(ctx, "q", GenerationConfig())
    coordinator.poll(ctx)
    assert wait_for(lambda: _finished(coordinator, ctx))
    assert coordinator.poll(ctx).text.startswith("Error: ")


def test_discard_keeps_running_stream():
    release = Event()
    fake = FakeCompletionClient(fragments=["1", "2"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "q", GenerationConfig())
    coordinator.poll(ctx)
    assert fake.first_fragment.wait(3)
    assert coordinator.discard(ctx) is False
    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))
    assert coordinator.discard(ctx) is True
    assert coordinator.poll(ctx) is None


@pytest.mark.parametrize("reset", ["clear", "import"])
def test_reply_is_dropped_when_log_is_reset_mid_stream(reset):
    release = Event()
    fake = FakeCompletionClient(fragments=["x", "y"], release=release)
    coordinator = StreamCoordinator(fake)
    ctx = _ctx()
    coordinator.begin(ctx, "q", GenerationConfig())
    coordinator.poll(ctx)
    assert fake.first_fragment.wait(3)

    store = get_conversation(ctx)
    if reset == "clear":
        store.clear()
    else:
        store.replace_all([ChatMessage(role=Role.USER, content="imported")])
    release.set()
    assert wait_for(lambda: _finished(coordinator, ctx))

    assert coordinator.poll(ctx).text == "xy"
    expected = [] if reset == "clear" else [(Role.USER, "imported")]
    assert [(m.role, m.content) for m in store.list()] == expected
