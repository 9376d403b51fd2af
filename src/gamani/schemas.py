"""Request and response shapes exchanged at the service boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_serializer, field_validator

from .models import Message, Project, SharedGame


def _require_text(value: Any, *, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be provided as a string.")
    trimmed = value.strip()
    if not trimmed:
        raise ValueError(f"{label} must be a non-empty string.")
    return trimmed


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("Value must be provided as a string.")
    return value.strip()


class CreateProjectRequest(BaseModel):
    """Request payload for creating a project."""

    name: str = Field(..., description="Display name of the project.")
    description: str | None = Field(None, description="Optional project summary.")

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        return _require_text(value, label="Project name")

    @field_validator("description", mode="before")
    @classmethod
    def _normalise_description(cls, value: Any) -> str | None:
        return _optional_text(value)


class UpdateProjectRequest(BaseModel):
    """Request payload for renaming or redescribing a project."""

    name: str | None = None
    description: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str | None:
        if value is None:
            return None
        return _require_text(value, label="Project name")

    @field_validator("description", mode="before")
    @classmethod
    def _normalise_description(cls, value: Any) -> str | None:
        return _optional_text(value)


class ConversationEntry(BaseModel):
    """Prior turn supplied with a stateless generation request."""

    role: Literal["user", "assistant"]
    content: str


class GenerateRequest(BaseModel):
    """Stateless generation request: prompt plus optional context."""

    prompt: str
    conversation: list[ConversationEntry] | None = None
    current_game: str | None = None

    @field_validator("prompt", mode="before")
    @classmethod
    def _validate_prompt(cls, value: Any) -> str:
        return _require_text(value, label="Prompt")


class GenerateResponse(BaseModel):
    """Generated explanation and, when produced, the new game code."""

    content: str | None = None
    game_code: str | None = None


class TurnRequest(BaseModel):
    """A new user prompt for a project's conversation."""

    prompt: str

    @field_validator("prompt", mode="before")
    @classmethod
    def _validate_prompt(cls, value: Any) -> str:
        return _require_text(value, label="Prompt")


class PublishRequest(BaseModel):
    """Title and description for publishing a project's current code."""

    title: str | None = None
    description: str | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> str | None:
        return _optional_text(value)


class ShareRequest(BaseModel):
    """Publish caller-supplied game content."""

    title: str
    content: str
    description: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _require_text(value, label="Title")

    @field_validator("content", mode="before")
    @classmethod
    def _validate_content(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Content must be a non-empty string.")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def _normalise_description(cls, value: Any) -> str | None:
        return _optional_text(value)


class ProjectResource(BaseModel):
    """Project representation returned to clients."""

    id: str
    user_id: str
    name: str
    description: str
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at")
    def _serialise_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResource":
        return cls(
            id=project.id,
            user_id=project.user_id,
            name=project.name,
            description=project.description,
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class MessageResource(BaseModel):
    """Conversation message representation returned to clients."""

    id: str
    project_id: str
    role: Literal["user", "assistant"]
    content: str
    game_code: str | None = None
    timestamp: datetime

    @field_serializer("timestamp")
    def _serialise_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    @classmethod
    def from_message(cls, message: Message) -> "MessageResource":
        return cls(
            id=message.id,
            project_id=message.project_id,
            role=message.role.value,
            content=message.content,
            game_code=message.game_code,
            timestamp=message.timestamp,
        )


class TurnResponse(BaseModel):
    """Both messages committed by a turn."""

    user_message: MessageResource
    assistant_message: MessageResource
    game_code: str | None = None


class SharedGameResource(BaseModel):
    """Shared game metadata; ``content`` is only included when requested."""

    share_id: str
    user_id: str
    title: str
    description: str
    created_at: datetime
    access_count: int = Field(..., ge=0)
    content: str | None = None

    @field_serializer("created_at")
    def _serialise_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @classmethod
    def from_shared_game(
        cls, shared: SharedGame, *, include_content: bool = False
    ) -> "SharedGameResource":
        return cls(
            share_id=shared.share_id,
            user_id=shared.user_id,
            title=shared.title,
            description=shared.description,
            created_at=shared.created_at,
            access_count=shared.access_count,
            content=shared.content if include_content else None,
        )


class ShareResponse(BaseModel):
    """Newly created shared game plus its public address."""

    shared_game: SharedGameResource
    share_url: str


class SharedGameView(BaseModel):
    """What a public reader of a shared game receives."""

    share_id: str
    title: str
    description: str
    content: str
    access_count: int = Field(..., ge=1)


__all__ = [
    "ConversationEntry",
    "CreateProjectRequest",
    "GenerateRequest",
    "GenerateResponse",
    "MessageResource",
    "ProjectResource",
    "PublishRequest",
    "ShareRequest",
    "ShareResponse",
    "SharedGameResource",
    "SharedGameView",
    "TurnRequest",
    "TurnResponse",
    "UpdateProjectRequest",
]
