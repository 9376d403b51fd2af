"""Unit tests for :mod:`gamani.models`."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gamani.errors import ValidationError
from gamani.models import (
    Message,
    MessageRole,
    Project,
    SharedGame,
    current_code,
    ordered_messages,
    pending_user_turn,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(
    sequence: int,
    role: MessageRole,
    *,
    content: str = "text",
    game_code: str | None = None,
    at: datetime = T0,
) -> Message:
    return Message(
        id=f"m{sequence}",
        project_id="p1",
        role=role,
        content=content,
        timestamp=at,
        sequence=sequence,
        game_code=game_code,
    )


def test_project_create_sets_matching_timestamps() -> None:
    project = Project.create(user_id="u1", name="  Space Race ", clock=lambda: T0)

    assert project.name == "Space Race"
    assert project.description == ""
    assert project.created_at == project.updated_at == T0
    assert project.id


def test_project_touched_never_moves_backwards() -> None:
    project = Project.create(user_id="u1", name="Game", clock=lambda: T0)

    later = project.touched(T0 + timedelta(minutes=5))
    assert later.updated_at == T0 + timedelta(minutes=5)
    assert later.touched(T0).updated_at == later.updated_at


def test_project_rejects_blank_name() -> None:
    with pytest.raises(ValidationError):
        Project.create(user_id="u1", name="   ")


def test_project_payload_round_trip_uses_camel_case_keys() -> None:
    project = Project.create(
        user_id="u1", name="Game", description="fun", clock=lambda: T0
    )

    payload = project.to_payload()
    assert payload["userId"] == "u1"
    assert payload["createdAt"] == T0.isoformat()
    assert Project.from_payload(payload) == project


def test_project_from_payload_accepts_zulu_timestamps() -> None:
    project = Project.from_payload(
        {
            "id": "p1",
            "userId": "u1",
            "name": "Game",
            "createdAt": "2024-05-01T12:00:00Z",
            "updatedAt": "2024-05-01T12:00:00Z",
        }
    )

    assert project.created_at == T0


def test_project_from_payload_reports_missing_keys() -> None:
    with pytest.raises(ValidationError, match="userId"):
        Project.from_payload({"id": "p1", "name": "Game"})


def test_user_message_requires_content() -> None:
    with pytest.raises(ValidationError):
        _message(0, MessageRole.USER, content="  ")


def test_user_message_cannot_carry_game_code() -> None:
    with pytest.raises(ValidationError):
        _message(0, MessageRole.USER, game_code="<html></html>")


def test_assistant_message_accepts_code_without_content() -> None:
    message = _message(1, MessageRole.ASSISTANT, content="", game_code="<p>x</p>")

    assert message.content == ""
    assert message.game_code == "<p>x</p>"


def test_assistant_message_treats_blank_code_as_absent() -> None:
    message = _message(1, MessageRole.ASSISTANT, content="Just chatting", game_code="  ")

    assert message.game_code is None


def test_assistant_message_needs_content_or_code() -> None:
    with pytest.raises(ValidationError):
        _message(1, MessageRole.ASSISTANT, content="", game_code=None)


def test_message_role_parse_rejects_unknown_roles() -> None:
    assert MessageRole.parse(" Assistant ") is MessageRole.ASSISTANT
    with pytest.raises(ValidationError):
        MessageRole.parse("system")


def test_message_from_payload_converts_decimal_sequence() -> None:
    message = _message(3, MessageRole.ASSISTANT, game_code="<b>g</b>")
    payload = dict(message.to_payload())
    payload["sequence"] = Decimal(3)

    restored = Message.from_payload(payload)

    assert restored == message
    assert payload["gameCode"] == "<b>g</b>"


def test_ordered_messages_breaks_timestamp_ties_by_sequence() -> None:
    first = _message(0, MessageRole.USER)
    second = _message(1, MessageRole.ASSISTANT)
    third = _message(2, MessageRole.USER, at=T0 + timedelta(seconds=1))

    assert ordered_messages([third, second, first]) == [first, second, third]


def test_current_code_returns_latest_assistant_code() -> None:
    messages = [
        _message(0, MessageRole.USER),
        _message(1, MessageRole.ASSISTANT, game_code="<v1/>"),
        _message(2, MessageRole.USER),
        _message(3, MessageRole.ASSISTANT, content="No change needed"),
        _message(4, MessageRole.USER),
        _message(5, MessageRole.ASSISTANT, game_code="<v2/>"),
    ]

    assert current_code(messages) == "<v2/>"
    assert current_code(messages[:5]) == "<v1/>"
    assert current_code([]) is None


def test_pending_user_turn_detects_unanswered_prompt() -> None:
    user = _message(0, MessageRole.USER)
    assistant = _message(1, MessageRole.ASSISTANT)

    assert pending_user_turn([user]) is user
    assert pending_user_turn([user, assistant]) is None
    assert pending_user_turn([]) is None


def test_shared_game_starts_with_zero_accesses() -> None:
    shared = SharedGame.create(
        user_id="u1", title="Race", content="<html></html>", clock=lambda: T0
    )

    assert shared.access_count == 0
    assert shared.with_access_count(4).access_count == 4
    assert shared.access_count == 0


def test_shared_game_rejects_negative_access_count() -> None:
    with pytest.raises(ValidationError):
        SharedGame(
            share_id="s1",
            user_id="u1",
            title="Race",
            content="<html></html>",
            created_at=T0,
            access_count=-1,
        )


def test_shared_game_payload_round_trip() -> None:
    shared = SharedGame.create(
        user_id="u1",
        title="Race",
        content="<html></html>",
        description="Zoom",
        clock=lambda: T0,
    ).with_access_count(2)

    payload = shared.to_payload()

    assert payload["shareId"] == shared.share_id
    assert payload["accessCount"] == 2
    assert SharedGame.from_payload(payload) == shared
