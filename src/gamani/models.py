"""Closed data model for projects, conversation messages, and shared games."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from .errors import ValidationError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current UTC datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh opaque identifier."""

    return str(uuid.uuid4())


def _validate_text(value: str, *, field_name: str) -> str:
    """Ensure text fields contain non-empty string values."""

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string, got {type(value)!r}")

    stripped = value.strip()
    if not stripped:
        raise ValidationError(f"{field_name} must be a non-empty string")

    return stripped


def _validate_optional_text(value: str | None, *, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string, got {type(value)!r}")
    return value.strip()


def _validate_timestamp(value: datetime, *, field_name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field_name} must be a datetime, got {type(value)!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(value: object, *, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return _validate_timestamp(value, field_name=field_name)
    if not isinstance(value, str):
        raise ValidationError(f"Invalid payload: {field_name} must be an ISO timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(
            f"Invalid payload: {field_name} must be an ISO timestamp"
        ) from exc
    return _validate_timestamp(parsed, field_name=field_name)


def _require(payload: Mapping[str, Any], key: str) -> Any:
    try:
        return payload[key]
    except KeyError as exc:
        raise ValidationError(f"Invalid payload: missing '{key}'") from exc


class MessageRole(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def parse(cls, value: "MessageRole | str") -> "MessageRole":
        """Return the role matching ``value`` or raise :class:`ValidationError`."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"Unknown message role: {value!r}")


@dataclass(frozen=True)
class Project:
    """A named workspace owned by exactly one user."""

    id: str
    user_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_text(self.id, field_name="id"))
        object.__setattr__(
            self, "user_id", _validate_text(self.user_id, field_name="user_id")
        )
        object.__setattr__(self, "name", _validate_text(self.name, field_name="name"))
        object.__setattr__(
            self,
            "description",
            _validate_optional_text(self.description, field_name="description"),
        )
        created_at = _validate_timestamp(self.created_at, field_name="created_at")
        updated_at = _validate_timestamp(self.updated_at, field_name="updated_at")
        if updated_at < created_at:
            raise ValidationError("updated_at must not precede created_at")
        object.__setattr__(self, "created_at", created_at)
        object.__setattr__(self, "updated_at", updated_at)

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        name: str,
        description: str | None = None,
        clock: Clock = utc_now,
    ) -> "Project":
        """Build a brand new project with a generated identifier."""

        now = clock()
        return cls(
            id=new_id(),
            user_id=user_id,
            name=name,
            description=description or "",
            created_at=now,
            updated_at=now,
        )

    def touched(self, at: datetime) -> "Project":
        """Return a copy whose ``updated_at`` moved forward to ``at``.

        ``updated_at`` never goes backwards, even if the clock does.
        """

        at = _validate_timestamp(at, field_name="at")
        return replace(self, updated_at=max(self.updated_at, at))

    def with_details(
        self,
        *,
        at: datetime,
        name: str | None = None,
        description: str | None = None,
    ) -> "Project":
        """Return a renamed/redescribed copy bumped to ``at``."""

        return replace(
            self.touched(at),
            name=self.name if name is None else name,
            description=self.description if description is None else description,
        )

    def to_payload(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the project."""

        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "description": self.description,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Project":
        """Build a project from its stored payload representation."""

        if not isinstance(payload, Mapping):
            raise ValidationError("Invalid project payload: expected an object")
        return cls(
            id=_require(payload, "id"),
            user_id=_require(payload, "userId"),
            name=_require(payload, "name"),
            description=payload.get("description") or "",
            created_at=_parse_timestamp(
                _require(payload, "createdAt"), field_name="createdAt"
            ),
            updated_at=_parse_timestamp(
                _require(payload, "updatedAt"), field_name="updatedAt"
            ),
        )


@dataclass(frozen=True)
class Message:
    """One immutable turn within a project's conversation."""

    id: str
    project_id: str
    role: MessageRole
    content: str
    timestamp: datetime
    sequence: int
    game_code: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_text(self.id, field_name="id"))
        object.__setattr__(
            self, "project_id", _validate_text(self.project_id, field_name="project_id")
        )
        role = MessageRole.parse(self.role)
        object.__setattr__(self, "role", role)
        object.__setattr__(
            self, "timestamp", _validate_timestamp(self.timestamp, field_name="timestamp")
        )
        if isinstance(self.sequence, bool) or not isinstance(self.sequence, int):
            raise ValidationError("sequence must be an int")
        if self.sequence < 0:
            raise ValidationError("sequence must be zero or a positive integer")

        game_code = self.game_code
        if game_code is not None:
            if not isinstance(game_code, str):
                raise ValidationError("game_code must be a string")
            if not game_code.strip():
                game_code = None
        if role is MessageRole.USER:
            if game_code is not None:
                raise ValidationError("Only assistant messages may carry game code")
            object.__setattr__(
                self, "content", _validate_text(self.content, field_name="content")
            )
        else:
            content = _validate_optional_text(self.content, field_name="content")
            if not content and game_code is None:
                raise ValidationError(
                    "Assistant messages need explanatory content or game code"
                )
            object.__setattr__(self, "content", content)
        object.__setattr__(self, "game_code", game_code)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        """Ordering key: timestamp first, insertion order breaks ties."""

        return (self.timestamp, self.sequence)

    def to_payload(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the message."""

        payload: dict[str, object] = {
            "id": self.id,
            "projectId": self.project_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }
        if self.game_code is not None:
            payload["gameCode"] = self.game_code
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Message":
        """Build a message from its stored payload representation."""

        if not isinstance(payload, Mapping):
            raise ValidationError("Invalid message payload: expected an object")
        sequence = _require(payload, "sequence")
        return cls(
            id=_require(payload, "id"),
            project_id=_require(payload, "projectId"),
            role=_require(payload, "role"),
            content=payload.get("content") or "",
            timestamp=_parse_timestamp(
                _require(payload, "timestamp"), field_name="timestamp"
            ),
            # DynamoDB hands numbers back as Decimal.
            sequence=int(sequence),
            game_code=payload.get("gameCode"),
        )


@dataclass(frozen=True)
class SharedGame:
    """An immutable, publicly addressable snapshot of published game code."""

    share_id: str
    user_id: str
    title: str
    content: str
    created_at: datetime
    description: str = ""
    access_count: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "share_id", _validate_text(self.share_id, field_name="share_id")
        )
        object.__setattr__(
            self, "user_id", _validate_text(self.user_id, field_name="user_id")
        )
        object.__setattr__(self, "title", _validate_text(self.title, field_name="title"))
        if not isinstance(self.content, str) or not self.content.strip():
            raise ValidationError("content must be a non-empty string")
        object.__setattr__(
            self,
            "description",
            _validate_optional_text(self.description, field_name="description"),
        )
        object.__setattr__(
            self,
            "created_at",
            _validate_timestamp(self.created_at, field_name="created_at"),
        )
        if isinstance(self.access_count, bool) or not isinstance(self.access_count, int):
            raise ValidationError("access_count must be an int")
        if self.access_count < 0:
            raise ValidationError("access_count must not be negative")

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        title: str,
        content: str,
        description: str | None = None,
        clock: Clock = utc_now,
    ) -> "SharedGame":
        """Build a fresh snapshot with a new share id and zero accesses."""

        return cls(
            share_id=new_id(),
            user_id=user_id,
            title=title,
            content=content,
            description=description or "",
            created_at=clock(),
            access_count=0,
        )

    def with_access_count(self, count: int) -> "SharedGame":
        """Return a copy reporting ``count`` accesses."""

        return replace(self, access_count=count)

    def to_payload(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the shared game."""

        return {
            "shareId": self.share_id,
            "userId": self.user_id,
            "title": self.title,
            "content": self.content,
            "description": self.description,
            "createdAt": self.created_at.isoformat(),
            "accessCount": self.access_count,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SharedGame":
        """Build a shared game from its stored payload representation."""

        if not isinstance(payload, Mapping):
            raise ValidationError("Invalid shared game payload: expected an object")
        return cls(
            share_id=_require(payload, "shareId"),
            user_id=_require(payload, "userId"),
            title=_require(payload, "title"),
            content=_require(payload, "content"),
            description=payload.get("description") or "",
            created_at=_parse_timestamp(
                _require(payload, "createdAt"), field_name="createdAt"
            ),
            access_count=int(payload.get("accessCount") or 0),
        )


def ordered_messages(messages: Iterable[Message]) -> list[Message]:
    """Return ``messages`` sorted by timestamp with insertion-order tie breaks."""

    return sorted(messages, key=lambda message: message.sort_key)


def current_code(messages: Sequence[Message]) -> str | None:
    """Return the game code of the latest assistant message that has one."""

    for message in reversed(messages):
        if message.role is MessageRole.ASSISTANT and message.game_code is not None:
            return message.game_code
    return None


def pending_user_turn(messages: Sequence[Message]) -> Message | None:
    """Return the trailing user message when it has no assistant response."""

    if messages and messages[-1].role is MessageRole.USER:
        return messages[-1]
    return None


__all__ = [
    "Clock",
    "Message",
    "MessageRole",
    "Project",
    "SharedGame",
    "current_code",
    "new_id",
    "ordered_messages",
    "pending_user_turn",
    "utc_now",
]
