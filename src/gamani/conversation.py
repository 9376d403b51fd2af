"""Conversation manager: projects, the turn protocol, and the current code pointer.

A turn is a user message followed by exactly one assistant message. The
per-project lock is held only while the message sequence is read or
appended; the generation call itself runs outside of it. A failed
generation removes the user message again so history never contains an
unanswered prompt. A cancelled one leaves the user message behind as a
*pending turn*, handled according to :class:`PendingTurnPolicy`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Sequence

from .errors import ConcurrencyConflict, NotFoundError, PendingTurnError, ValidationError
from .generation import (
    GenerationCancelled,
    GenerationEngine,
    GenerationRequest,
    GenerationResult,
    ResilientGenerator,
)
from .locks import KeyedLocks
from .models import (
    Clock,
    Message,
    MessageRole,
    Project,
    current_code,
    new_id,
    pending_user_turn,
    utc_now,
)
from .store import ArtifactStore, validate_key

logger = logging.getLogger(__name__)


class PendingTurnPolicy(str, Enum):
    """What a new turn does when the project ends with an unanswered user turn."""

    REJECT = "reject"
    """Raise :class:`PendingTurnError`; the caller resumes or discards explicitly."""

    RESUME = "resume"
    """Answer the pending prompt first, then handle the new one."""

    @classmethod
    def parse(cls, value: "PendingTurnPolicy | str") -> "PendingTurnPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown pending turn policy: {value!r}") from exc


@dataclass(frozen=True)
class TurnOutcome:
    """The pair of messages committed by a successful turn."""

    user_message: Message
    assistant_message: Message

    @property
    def game_code(self) -> str | None:
        return self.assistant_message.game_code


@dataclass(frozen=True)
class _TurnContext:
    user_message: Message
    history: Sequence[Message]
    current_game: str | None


class ConversationManager:
    """Own the ordering and mutation rules of every project's conversation."""

    def __init__(
        self,
        store: ArtifactStore,
        engine: ResilientGenerator | GenerationEngine,
        *,
        locks: KeyedLocks | None = None,
        pending_policy: PendingTurnPolicy | str = PendingTurnPolicy.REJECT,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        if not isinstance(engine, ResilientGenerator):
            engine = ResilientGenerator(engine)
        self._engine = engine
        self._locks = locks or KeyedLocks()
        self._pending_policy = PendingTurnPolicy.parse(pending_policy)
        self._clock = clock
        self._in_flight: set[str] = set()
        self._in_flight_guard = threading.Lock()

    @property
    def pending_policy(self) -> PendingTurnPolicy:
        return self._pending_policy

    # Projects ---------------------------------------------------------------

    def create_project(
        self, user_id: str, name: str, description: str | None = None
    ) -> Project:
        project = Project.create(
            user_id=validate_key(user_id, field_name="user_id"),
            name=name,
            description=description,
            clock=self._clock,
        )
        self._store.put_project(project)
        logger.info("Created project %s for user %s", project.id, project.user_id)
        return project

    def get_project(self, user_id: str, project_id: str) -> Project:
        """Return the project if ``user_id`` owns it.

        Projects owned by somebody else are reported as missing.
        """

        project = self._store.get_project(project_id)
        if project.user_id != user_id:
            logger.warning("User %s attempted to access project %s", user_id, project_id)
            raise NotFoundError(f"Project '{project_id}' does not exist")
        return project

    def list_projects(self, user_id: str) -> List[Project]:
        return self._store.list_projects(validate_key(user_id, field_name="user_id"))

    def update_project(
        self,
        user_id: str,
        project_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Project:
        with self._locks.hold(project_id):
            project = self.get_project(user_id, project_id)
            updated = project.with_details(
                at=self._clock(), name=name, description=description
            )
            self._store.put_project(updated)
        logger.info("Updated project %s", project_id)
        return updated

    def delete_project(self, user_id: str, project_id: str) -> None:
        """Delete the project and its messages. Shared games are unaffected."""

        with self._locks.hold(project_id):
            self.get_project(user_id, project_id)
            self._ensure_idle(project_id)
            self._store.delete_project(project_id)
        logger.info("Deleted project %s", project_id)

    # Messages ---------------------------------------------------------------

    def list_messages(self, user_id: str, project_id: str) -> List[Message]:
        self.get_project(user_id, project_id)
        return self._store.list_messages(project_id)

    def get_current_code(self, user_id: str, project_id: str) -> str | None:
        """Return the latest assistant game code, or ``None`` for a fresh project."""

        return current_code(self.list_messages(user_id, project_id))

    def clear_messages(self, user_id: str, project_id: str) -> int:
        with self._locks.hold(project_id):
            project = self.get_project(user_id, project_id)
            self._ensure_idle(project_id)
            removed = self._store.clear_messages(project_id)
            self._store.put_project(project.touched(self._clock()))
        logger.info("Cleared %d message(s) from project %s", removed, project_id)
        return removed

    def append_user_turn(self, user_id: str, project_id: str, prompt: str) -> Message:
        """Append a user message opening a new turn.

        Raises:
            ValidationError: If ``prompt`` is empty.
            NotFoundError: If the project does not exist or is not owned by ``user_id``.
            PendingTurnError: If the previous user turn never got a response.
        """

        _validate_prompt(prompt)
        with self._locks.hold(project_id):
            project = self.get_project(user_id, project_id)
            self._ensure_idle(project_id)
            messages = self._store.list_messages(project_id)
            pending = pending_user_turn(messages)
            if pending is not None:
                raise PendingTurnError(project_id, pending.id)
            return self._append_user(project, messages, prompt).user_message

    def append_assistant_turn(
        self,
        user_id: str,
        project_id: str,
        result: GenerationResult,
        *,
        reply_to: str | None = None,
    ) -> Message:
        """Append the assistant response closing the current turn.

        ``reply_to`` optionally names the user message being answered; the
        append is refused if the conversation moved on in the meantime.

        Raises:
            ConcurrencyConflict: While a turn of this project is generating.
        """

        with self._locks.hold(project_id):
            self._ensure_idle(project_id)
            return self._append_reply(user_id, project_id, result, reply_to=reply_to)

    def _append_reply(
        self,
        user_id: str,
        project_id: str,
        result: GenerationResult,
        *,
        reply_to: str | None,
    ) -> Message:
        # Caller holds the project lock.
        project = self.get_project(user_id, project_id)
        messages = self._store.list_messages(project_id)
        pending = pending_user_turn(messages)
        if pending is None:
            raise ValidationError("An assistant turn must follow an unanswered user turn")
        if reply_to is not None and pending.id != reply_to:
            raise ConcurrencyConflict(
                f"Project '{project_id}' no longer awaits a reply to '{reply_to}'"
            )
        return self._append_assistant(project, messages, result)

    # Turn protocol ----------------------------------------------------------

    def run_turn(
        self,
        user_id: str,
        project_id: str,
        prompt: str,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TurnOutcome:
        """Run a full turn: append the prompt, generate, append the response.

        ``timeout`` bounds the total time spent waiting on generation. On any
        generation failure the user message is removed again and the error
        propagates; on cancellation it is kept as a pending turn.
        """

        _validate_prompt(prompt)
        deadline = self._deadline(timeout)
        with self._locks.hold(project_id):
            project = self.get_project(user_id, project_id)
            self._claim(project_id)
            try:
                messages = self._store.list_messages(project_id)
                pending = pending_user_turn(messages)
                if pending is not None and self._pending_policy is PendingTurnPolicy.REJECT:
                    raise PendingTurnError(project_id, pending.id)
                if pending is None:
                    context = self._append_user(project, messages, prompt)
            except BaseException:
                self._release(project_id)
                raise

        try:
            if pending is not None:
                logger.info(
                    "Resuming pending turn %s on project %s", pending.id, project_id
                )
                resumed = self._generate_and_commit(
                    user_id,
                    project_id,
                    _context_for_pending(messages),
                    deadline=deadline,
                    cancel_event=cancel_event,
                    rollback=False,
                )
                if pending.content == prompt.strip():
                    return resumed
                with self._locks.hold(project_id):
                    project = self.get_project(user_id, project_id)
                    messages = self._store.list_messages(project_id)
                    context = self._append_user(project, messages, prompt)

            return self._generate_and_commit(
                user_id,
                project_id,
                context,
                deadline=deadline,
                cancel_event=cancel_event,
                rollback=True,
            )
        finally:
            self._release(project_id)

    def resume_pending_turn(
        self,
        user_id: str,
        project_id: str,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> TurnOutcome:
        """Retry generation for the project's pending user turn.

        A failure leaves the pending turn in place so it can be resumed again
        or discarded.
        """

        deadline = self._deadline(timeout)
        with self._locks.hold(project_id):
            self.get_project(user_id, project_id)
            self._claim(project_id)
            try:
                messages = self._store.list_messages(project_id)
                if pending_user_turn(messages) is None:
                    raise ValidationError(f"Project '{project_id}' has no pending turn")
            except BaseException:
                self._release(project_id)
                raise
        try:
            return self._generate_and_commit(
                user_id,
                project_id,
                _context_for_pending(messages),
                deadline=deadline,
                cancel_event=cancel_event,
                rollback=False,
            )
        finally:
            self._release(project_id)

    def discard_pending_turn(self, user_id: str, project_id: str) -> Message:
        """Remove the pending user turn and return it."""

        with self._locks.hold(project_id):
            project = self.get_project(user_id, project_id)
            self._ensure_idle(project_id)
            pending = pending_user_turn(self._store.list_messages(project_id))
            if pending is None:
                raise ValidationError(f"Project '{project_id}' has no pending turn")
            self._store.delete_message(project_id, pending.id)
            self._store.put_project(project.touched(self._clock()))
        logger.info("Discarded pending turn %s on project %s", pending.id, project_id)
        return pending

    # Internals --------------------------------------------------------------

    def _generate_and_commit(
        self,
        user_id: str,
        project_id: str,
        context: _TurnContext,
        *,
        deadline: float,
        cancel_event: threading.Event | None,
        rollback: bool,
    ) -> TurnOutcome:
        request = GenerationRequest.for_messages(
            context.user_message.content, context.history, context.current_game
        )
        try:
            result = self._engine.generate(
                request,
                timeout=max(deadline - time.monotonic(), 1e-3),
                cancel_event=cancel_event,
            )
        except GenerationCancelled:
            logger.warning(
                "Turn %s on project %s cancelled; leaving it pending",
                context.user_message.id,
                project_id,
            )
            raise
        except Exception:
            if rollback:
                self._rollback(project_id, context.user_message)
            raise

        try:
            with self._locks.hold(project_id):
                assistant = self._append_reply(
                    user_id, project_id, result, reply_to=context.user_message.id
                )
        except Exception:
            if rollback:
                self._rollback(project_id, context.user_message)
            raise
        logger.info(
            "Committed turn on project %s (new code: %s)",
            project_id,
            assistant.game_code is not None,
        )
        return TurnOutcome(user_message=context.user_message, assistant_message=assistant)

    def _append_user(
        self, project: Project, messages: Sequence[Message], prompt: str
    ) -> _TurnContext:
        timestamp, sequence = self._next_position(messages)
        message = Message(
            id=new_id(),
            project_id=project.id,
            role=MessageRole.USER,
            content=prompt,
            timestamp=timestamp,
            sequence=sequence,
        )
        self._commit(project, message)
        return _TurnContext(
            user_message=message,
            history=tuple(messages),
            current_game=current_code(messages),
        )

    def _append_assistant(
        self, project: Project, messages: Sequence[Message], result: GenerationResult
    ) -> Message:
        timestamp, sequence = self._next_position(messages)
        message = Message(
            id=new_id(),
            project_id=project.id,
            role=MessageRole.ASSISTANT,
            content=result.content,
            game_code=result.game_code,
            timestamp=timestamp,
            sequence=sequence,
        )
        self._commit(project, message)
        return message

    def _commit(self, project: Project, message: Message) -> None:
        self._store.append_message(message)
        try:
            self._store.put_project(project.touched(message.timestamp))
        except Exception:
            self._store.delete_message(project.id, message.id)
            raise

    def _rollback(self, project_id: str, message: Message) -> None:
        """Remove a failed turn's user message if it still ends the conversation."""

        with self._locks.hold(project_id, blocking=True):
            messages = self._store.list_messages(project_id)
            if not messages or messages[-1].id != message.id:
                logger.warning(
                    "Not rolling back user turn %s on project %s: it no longer "
                    "ends the conversation",
                    message.id,
                    project_id,
                )
                return
            self._store.delete_message(project_id, message.id)
        logger.info("Rolled back user turn %s on project %s", message.id, project_id)

    def _next_position(self, messages: Sequence[Message]) -> tuple[datetime, int]:
        now = self._clock()
        if not messages:
            return now, 0
        last = messages[-1]
        return max(now, last.timestamp), last.sequence + 1

    def _deadline(self, timeout: float | None) -> float:
        budget = self._engine.timeout if timeout is None else float(timeout)
        if budget <= 0:
            raise ValueError("timeout must be positive")
        return time.monotonic() + budget

    def _claim(self, project_id: str) -> None:
        with self._in_flight_guard:
            if project_id in self._in_flight:
                raise ConcurrencyConflict(
                    f"Project '{project_id}' already has a turn in progress"
                )
            self._in_flight.add(project_id)

    def _release(self, project_id: str) -> None:
        with self._in_flight_guard:
            self._in_flight.discard(project_id)

    def _ensure_idle(self, project_id: str) -> None:
        with self._in_flight_guard:
            if project_id in self._in_flight:
                raise ConcurrencyConflict(
                    f"Project '{project_id}' already has a turn in progress"
                )


def _validate_prompt(prompt: str) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("prompt must be a non-empty string")


def _context_for_pending(messages: Sequence[Message]) -> _TurnContext:
    history = tuple(messages[:-1])
    return _TurnContext(
        user_message=messages[-1],
        history=history,
        current_game=current_code(history),
    )


__all__ = ["ConversationManager", "PendingTurnPolicy", "TurnOutcome"]
