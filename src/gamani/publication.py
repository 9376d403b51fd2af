"""Publish a project's current code as a frozen, access-counted shared game."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from .conversation import ConversationManager
from .errors import EmptyProjectError, NotFoundError
from .models import Clock, SharedGame, utc_now
from .store import ArtifactStore, validate_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessRecord:
    """Result of a counted read: the frozen content and the new access count."""

    share_id: str
    title: str
    content: str
    description: str
    access_count: int


class PublicationManager:
    """Snapshot game code into shared games and account for every read."""

    def __init__(
        self,
        store: ArtifactStore,
        conversations: ConversationManager,
        *,
        base_url: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._base_url = base_url.rstrip("/") if base_url else None
        self._clock = clock

    def publish(
        self,
        user_id: str,
        project_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> SharedGame:
        """Copy the project's current code into a brand new shared game.

        Each call allocates a new share id with its own access counter; the
        content never follows later changes to the project.

        Raises:
            NotFoundError: If the project does not exist or is not owned by ``user_id``.
            EmptyProjectError: If no assistant message has produced code yet.
        """

        project = self._conversations.get_project(user_id, project_id)
        code = self._conversations.get_current_code(user_id, project_id)
        if code is None:
            raise EmptyProjectError(f"Project '{project_id}' has no game code to publish")
        shared = SharedGame.create(
            user_id=project.user_id,
            title=title if title is not None and title.strip() else project.name,
            content=code,
            description=description if description is not None else project.description,
            clock=self._clock,
        )
        self._store.put_shared_game(shared)
        logger.info(
            "Published project %s as %s (%d bytes)",
            project_id,
            shared.share_id,
            len(code),
        )
        return shared

    def share(
        self,
        user_id: str,
        *,
        title: str,
        content: str,
        description: str | None = None,
    ) -> SharedGame:
        """Publish caller-supplied game content directly."""

        shared = SharedGame.create(
            user_id=validate_key(user_id, field_name="user_id"),
            title=title,
            content=content,
            description=description,
            clock=self._clock,
        )
        self._store.put_shared_game(shared)
        logger.info("Shared game %s (%d bytes)", shared.share_id, len(content))
        return shared

    def record_access(self, share_id: str) -> AccessRecord:
        """Count one external read and return the frozen content."""

        count = self._store.increment_access_count(share_id)
        shared = self._store.get_shared_game(share_id)
        logger.info("Shared game %s accessed (count=%d)", share_id, count)
        return AccessRecord(
            share_id=shared.share_id,
            title=shared.title,
            content=shared.content,
            description=shared.description,
            access_count=count,
        )

    def get_shared_game(self, share_id: str) -> SharedGame:
        """Return the shared game without counting an access."""

        return self._store.get_shared_game(share_id)

    def list_shared_games(self, user_id: str) -> List[SharedGame]:
        return self._store.list_shared_games(validate_key(user_id, field_name="user_id"))

    def delete_shared_game(self, user_id: str, share_id: str) -> None:
        shared = self._store.get_shared_game(share_id)
        if shared.user_id != user_id:
            raise NotFoundError(f"Shared game '{share_id}' does not exist")
        self._store.delete_shared_game(share_id)
        logger.info("Deleted shared game %s", share_id)

    def share_url(self, share_id: str) -> str:
        """Return the public address of ``share_id``."""

        key = validate_key(share_id, field_name="share_id")
        if self._base_url is None:
            return f"/shared/{key}"
        return f"{self._base_url}/shared/{key}"


__all__ = ["AccessRecord", "PublicationManager"]
