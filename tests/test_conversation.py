"""Tests for the conversation manager and its turn protocol."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, List

import pytest

from gamani.conversation import ConversationManager, PendingTurnPolicy
from gamani.errors import (
    ConcurrencyConflict,
    GenerationFailed,
    NotFoundError,
    PendingTurnError,
    PersistenceError,
    ValidationError,
)
from gamani.generation import (
    GenerationCancelled,
    GenerationRequest,
    GenerationResult,
    GenerationTimeout,
    ResilientGenerator,
    UpstreamRejected,
    UpstreamUnavailable,
)
from gamani.llm import LLMRetryPolicy
from gamani.locks import KeyedLocks
from gamani.models import Message, MessageRole
from gamani.store import InMemoryArtifactStore

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from tests.conftest import ScriptedEngine, StepClock


def _result(code: str | None, content: str = "Done") -> GenerationResult:
    return GenerationResult(content=content, game_code=code)


def _manager(
    engine: Any,
    *,
    store: InMemoryArtifactStore | None = None,
    clock: Callable[[], datetime] | None = None,
    policy: PendingTurnPolicy = PendingTurnPolicy.REJECT,
    locks: KeyedLocks | None = None,
) -> ConversationManager:
    generator = ResilientGenerator(
        engine,
        timeout=5,
        retry_policy=LLMRetryPolicy(max_attempts=2, initial_backoff=0.0),
        sleep=lambda _: None,
    )
    kwargs: dict[str, Any] = {"pending_policy": policy, "locks": locks}
    if clock is not None:
        kwargs["clock"] = clock
    return ConversationManager(store or InMemoryArtifactStore(), generator, **kwargs)


def _assert_well_formed(messages: List[Message]) -> None:
    roles = [m.role for m in messages]
    expected = [MessageRole.USER, MessageRole.ASSISTANT] * (len(messages) // 2)
    assert roles[: len(expected)] == expected
    timestamps = [m.timestamp for m in messages]
    assert timestamps == sorted(timestamps)


def test_failed_turn_keeps_previous_code_and_history(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(
        _result("G1", "Here is a button"),
        GenerationTimeout("slow"),
        GenerationTimeout("still slow"),
    )
    manager = _manager(engine)
    project = manager.create_project("u1", "demo", "")

    first = manager.run_turn("u1", project.id, "make a button")
    assert first.game_code == "G1"
    assert manager.get_current_code("u1", project.id) == "G1"

    with pytest.raises(GenerationFailed) as excinfo:
        manager.run_turn("u1", project.id, "make it red")

    assert excinfo.value.attempts == 2
    assert manager.get_current_code("u1", project.id) == "G1"
    messages = manager.list_messages("u1", project.id)
    assert [(m.role, m.content) for m in messages] == [
        (MessageRole.USER, "make a button"),
        (MessageRole.ASSISTANT, "Here is a button"),
    ]


def test_turns_alternate_with_non_decreasing_timestamps(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    # A clock that jumps backwards must not break ordering.
    times = iter(
        datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) + timedelta(seconds=s)
        for s in [0, 10, 5, 3, 20, 1, 1, 30, 2, 2, 2, 2]
    )
    engine = make_scripted_engine(
        _result("G1"),
        UpstreamRejected("policy"),
        _result(None, "Just chatting"),
        _result("G2"),
    )
    manager = _manager(engine, clock=lambda: next(times))
    project = manager.create_project("u1", "demo")

    manager.run_turn("u1", project.id, "make a game")
    with pytest.raises(UpstreamRejected):
        manager.run_turn("u1", project.id, "something rude")
    manager.run_turn("u1", project.id, "how are you?")
    manager.run_turn("u1", project.id, "add a dog")

    messages = manager.list_messages("u1", project.id)
    assert len(messages) == 6
    _assert_well_formed(messages)
    assert manager.get_current_code("u1", project.id) == "G2"
    assert manager.get_project("u1", project.id).updated_at >= messages[-1].timestamp


def test_conversational_reply_does_not_move_current_code(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    manager = _manager(
        make_scripted_engine(_result("G1"), _result(None, "A fun question!"))
    )
    project = manager.create_project("u1", "demo")

    manager.run_turn("u1", project.id, "make a game")
    outcome = manager.run_turn("u1", project.id, "what is a game?")

    assert outcome.game_code is None
    assert manager.get_current_code("u1", project.id) == "G1"


def test_engine_receives_history_and_current_code(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(_result("G1", "Built it"), _result("G2"))
    manager = _manager(engine)
    project = manager.create_project("u1", "demo")

    manager.run_turn("u1", project.id, "make a button")
    manager.run_turn("u1", project.id, "make it red")

    first, second = engine.requests
    assert first.conversation == () and first.current_game is None
    assert second.prompt == "make it red"
    assert [(t.role, t.content) for t in second.conversation] == [
        (MessageRole.USER, "make a button"),
        (MessageRole.ASSISTANT, "Built it"),
    ]
    assert second.current_game == "G1"


def test_transient_failure_is_retried_within_turn(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(UpstreamUnavailable("busy"), _result("G1"))
    manager = _manager(engine)
    project = manager.create_project("u1", "demo")

    outcome = manager.run_turn("u1", project.id, "make a game")

    assert outcome.game_code == "G1"
    assert len(manager.list_messages("u1", project.id)) == 2


def test_empty_prompt_is_rejected_without_side_effects(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine()
    manager = _manager(engine)
    project = manager.create_project("u1", "demo")

    with pytest.raises(ValidationError):
        manager.run_turn("u1", project.id, "   ")
    with pytest.raises(ValidationError):
        manager.append_user_turn("u1", project.id, "")

    assert manager.list_messages("u1", project.id) == []
    assert engine.requests == []


def test_foreign_and_unknown_projects_are_not_found(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    manager = _manager(make_scripted_engine())
    project = manager.create_project("u1", "demo")

    with pytest.raises(NotFoundError):
        manager.run_turn("intruder", project.id, "make a game")
    with pytest.raises(NotFoundError):
        manager.list_messages("intruder", project.id)
    with pytest.raises(NotFoundError):
        manager.get_current_code("u1", "missing")


def test_manual_turn_protocol(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
    step_clock: "StepClock",
) -> None:
    manager = _manager(make_scripted_engine(), clock=step_clock)
    project = manager.create_project("u1", "demo")

    with pytest.raises(ValidationError):
        manager.append_assistant_turn("u1", project.id, _result("G0"))

    user = manager.append_user_turn("u1", project.id, "make a button")
    with pytest.raises(PendingTurnError) as excinfo:
        manager.append_user_turn("u1", project.id, "again")
    assert excinfo.value.message_id == user.id

    with pytest.raises(ConcurrencyConflict):
        manager.append_assistant_turn(
            "u1", project.id, _result("G1"), reply_to="another-message"
        )
    assistant = manager.append_assistant_turn(
        "u1", project.id, _result("G1"), reply_to=user.id
    )

    assert assistant.game_code == "G1"
    assert assistant.timestamp > user.timestamp
    assert manager.get_project("u1", project.id).updated_at == assistant.timestamp


def test_generation_runs_outside_the_project_lock(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    started = threading.Event()
    release = threading.Event()

    def slow(request: GenerationRequest) -> GenerationResult:
        started.set()
        release.wait(5)
        return _result("G-slow")

    engine = make_scripted_engine(slow, _result("G-other"))
    manager = _manager(engine)
    busy = manager.create_project("u1", "busy")
    other = manager.create_project("u1", "other")
    outcomes: list[Any] = []

    worker = threading.Thread(
        target=lambda: outcomes.append(manager.run_turn("u1", busy.id, "make a game"))
    )
    worker.start()
    try:
        assert started.wait(5)

        with pytest.raises(ConcurrencyConflict):
            manager.run_turn("u1", busy.id, "make another")
        with pytest.raises(ConcurrencyConflict):
            manager.delete_project("u1", busy.id)

        renamed = manager.update_project("u1", busy.id, name="still responsive")
        assert renamed.name == "still responsive"
        assert manager.run_turn("u1", other.id, "make a game").game_code == "G-other"
    finally:
        release.set()
        worker.join(5)

    assert outcomes and outcomes[0].game_code == "G-slow"
    assert len(manager.list_messages("u1", busy.id)) == 2


def test_assistant_turn_cannot_answer_a_prompt_that_is_generating(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    started = threading.Event()
    release = threading.Event()

    def slow(request: GenerationRequest) -> GenerationResult:
        started.set()
        release.wait(5)
        return _result("G-slow")

    manager = _manager(make_scripted_engine(slow))
    project = manager.create_project("u1", "game")
    outcomes: list[Any] = []
    errors: list[Exception] = []

    def turn() -> None:
        try:
            outcomes.append(manager.run_turn("u1", project.id, "make a game"))
        except Exception as exc:  # pragma: no cover - surfaced by the assertions
            errors.append(exc)

    worker = threading.Thread(target=turn)
    worker.start()
    try:
        assert started.wait(5)
        with pytest.raises(ConcurrencyConflict):
            manager.append_assistant_turn("u1", project.id, _result("G-other"))
    finally:
        release.set()
        worker.join(5)

    assert errors == []
    assert outcomes[0].game_code == "G-slow"
    messages = manager.list_messages("u1", project.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[-1].game_code == "G-slow"


def test_failed_turn_keeps_a_user_message_that_was_answered_elsewhere(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    store = InMemoryArtifactStore()

    def answered_then_rejected(request: GenerationRequest) -> GenerationResult:
        # Another writer sharing the store answers the prompt first.
        store.append_message(
            Message(
                id="reply-elsewhere",
                project_id=project.id,
                role=MessageRole.ASSISTANT,
                content="Answered elsewhere",
                timestamp=datetime.now(timezone.utc) + timedelta(minutes=1),
                sequence=1,
            )
        )
        raise UpstreamRejected("content policy")

    manager = _manager(make_scripted_engine(answered_then_rejected), store=store)
    project = manager.create_project("u1", "game")

    with pytest.raises(UpstreamRejected):
        manager.run_turn("u1", project.id, "make a game")

    messages = manager.list_messages("u1", project.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    _assert_well_formed(messages)


def test_rollback_waits_for_a_contended_project_lock(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    locks = KeyedLocks(timeout=0.05)
    held = threading.Event()
    holders: list[threading.Thread] = []

    def hold_lock() -> None:
        with locks.hold(project.id):
            held.set()
            time.sleep(0.3)

    def reject_while_locked(request: GenerationRequest) -> GenerationResult:
        holder = threading.Thread(target=hold_lock)
        holders.append(holder)
        holder.start()
        assert held.wait(5)
        raise UpstreamRejected("content policy")

    manager = _manager(make_scripted_engine(reject_while_locked), locks=locks)
    project = manager.create_project("u1", "game")

    with pytest.raises(UpstreamRejected):
        manager.run_turn("u1", project.id, "make a game")

    holders[0].join(5)
    assert manager.list_messages("u1", project.id) == []


def test_turn_timeout_rolls_back_user_message(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    release = threading.Event()

    def hang(request: GenerationRequest) -> GenerationResult:
        release.wait(5)
        return _result("late")

    manager = _manager(make_scripted_engine(hang))
    project = manager.create_project("u1", "demo")

    try:
        with pytest.raises(GenerationFailed):
            manager.run_turn("u1", project.id, "make a game", timeout=0.2)
    finally:
        release.set()

    assert manager.list_messages("u1", project.id) == []
    assert manager.get_current_code("u1", project.id) is None


def _cancelled_turn(manager: ConversationManager, project_id: str, prompt: str) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(GenerationCancelled):
        manager.run_turn("u1", project_id, prompt, cancel_event=cancel)


def test_cancelled_turn_is_left_pending_and_rejected_by_default(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(_result("G1"), _result("G2"))
    manager = _manager(engine)
    project = manager.create_project("u1", "demo")
    assert manager.pending_policy is PendingTurnPolicy.REJECT

    _cancelled_turn(manager, project.id, "make a game")
    messages = manager.list_messages("u1", project.id)
    assert [m.role for m in messages] == [MessageRole.USER]

    with pytest.raises(PendingTurnError):
        manager.run_turn("u1", project.id, "make something else")

    discarded = manager.discard_pending_turn("u1", project.id)
    assert discarded.content == "make a game"
    assert manager.list_messages("u1", project.id) == []

    outcome = manager.run_turn("u1", project.id, "make something else")
    assert outcome.user_message.content == "make something else"
    _assert_well_formed(manager.list_messages("u1", project.id))


def test_pending_turn_can_be_resumed_explicitly(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(UpstreamRejected("no"), _result("G1"))
    manager = _manager(engine)
    project = manager.create_project("u1", "demo")

    _cancelled_turn(manager, project.id, "make a game")

    with pytest.raises(UpstreamRejected):
        manager.resume_pending_turn("u1", project.id)
    # A failed resume keeps the prompt pending.
    assert len(manager.list_messages("u1", project.id)) == 1

    outcome = manager.resume_pending_turn("u1", project.id)

    assert outcome.user_message.content == "make a game"
    assert manager.get_current_code("u1", project.id) == "G1"
    with pytest.raises(ValidationError):
        manager.resume_pending_turn("u1", project.id)
    with pytest.raises(ValidationError):
        manager.discard_pending_turn("u1", project.id)


def test_resume_policy_answers_pending_prompt_first(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(_result("G1"), _result("G2"))
    manager = _manager(engine, policy=PendingTurnPolicy.RESUME)
    project = manager.create_project("u1", "demo")

    _cancelled_turn(manager, project.id, "make a game")
    outcome = manager.run_turn("u1", project.id, "make it blue")

    assert outcome.user_message.content == "make it blue"
    assert outcome.game_code == "G2"
    messages = manager.list_messages("u1", project.id)
    assert [m.content for m in messages if m.role is MessageRole.USER] == [
        "make a game",
        "make it blue",
    ]
    _assert_well_formed(messages)
    assert engine.requests[-1].current_game == "G1"


def test_resume_policy_does_not_duplicate_a_resubmitted_prompt(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    engine = make_scripted_engine(_result("G1"))
    manager = _manager(engine, policy=PendingTurnPolicy.RESUME)
    project = manager.create_project("u1", "demo")

    _cancelled_turn(manager, project.id, "make a game")
    outcome = manager.run_turn("u1", project.id, "make a game")

    assert outcome.game_code == "G1"
    assert len(manager.list_messages("u1", project.id)) == 2
    assert len(engine.requests) == 1


def test_persistence_failure_leaves_history_untouched(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
) -> None:
    class FlakyStore(InMemoryArtifactStore):
        fail = False

        def append_message(self, message: Message) -> None:
            if self.fail and message.role is MessageRole.ASSISTANT:
                raise PersistenceError("disk full")
            super().append_message(message)

    store = FlakyStore()
    manager = _manager(make_scripted_engine(_result("G1"), _result("G2")), store=store)
    project = manager.create_project("u1", "demo")
    manager.run_turn("u1", project.id, "make a game")

    store.fail = True
    with pytest.raises(PersistenceError):
        manager.run_turn("u1", project.id, "make it red")

    assert len(manager.list_messages("u1", project.id)) == 2
    assert manager.get_current_code("u1", project.id) == "G1"


def test_project_crud(
    make_scripted_engine: Callable[..., "ScriptedEngine"],
    step_clock: "StepClock",
) -> None:
    manager = _manager(make_scripted_engine(_result("G1")), clock=step_clock)
    first = manager.create_project("u1", "first", "a description")
    second = manager.create_project("u1", "second")
    manager.create_project("u2", "theirs")

    assert [p.id for p in manager.list_projects("u1")] == [second.id, first.id]

    updated = manager.update_project("u1", first.id, description="changed")
    assert updated.name == "first"
    assert updated.description == "changed"
    assert updated.updated_at > first.updated_at

    manager.run_turn("u1", first.id, "make a game")
    assert manager.clear_messages("u1", first.id) == 2
    assert manager.get_current_code("u1", first.id) is None

    manager.delete_project("u1", first.id)
    with pytest.raises(NotFoundError):
        manager.get_project("u1", first.id)
    with pytest.raises(NotFoundError):
        manager.delete_project("u2", second.id)
