"""Artifact store contract plus in-memory and JSON-file implementations."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from .errors import NotFoundError, PersistenceError, ValidationError
from .models import Message, Project, SharedGame, ordered_messages


class ArtifactStore(ABC):
    """Durable key-based storage for projects, messages, and shared games.

    Implementations raise :class:`NotFoundError` for unknown identifiers and
    :class:`PersistenceError` when a write cannot be made durable. A failed
    write leaves previously stored records untouched.
    """

    @abstractmethod
    def get_project(self, project_id: str) -> Project:
        """Return the project or raise :class:`NotFoundError`."""

    @abstractmethod
    def put_project(self, project: Project) -> None:
        """Create or fully overwrite ``project``."""

    @abstractmethod
    def list_projects(self, user_id: str) -> List[Project]:
        """Return the projects owned by ``user_id``, newest first."""

    @abstractmethod
    def delete_project(self, project_id: str) -> None:
        """Delete the project together with all of its messages."""

    @abstractmethod
    def list_messages(self, project_id: str) -> List[Message]:
        """Return the project's messages in append order."""

    @abstractmethod
    def append_message(self, message: Message) -> None:
        """Durably record ``message`` or fail without a partial write."""

    @abstractmethod
    def delete_message(self, project_id: str, message_id: str) -> None:
        """Remove a single message; used to roll back or discard a user turn."""

    @abstractmethod
    def clear_messages(self, project_id: str) -> int:
        """Remove every message of the project and return how many were removed."""

    @abstractmethod
    def get_shared_game(self, share_id: str) -> SharedGame:
        """Return the shared game or raise :class:`NotFoundError`."""

    @abstractmethod
    def put_shared_game(self, shared_game: SharedGame) -> None:
        """Persist a newly published shared game."""

    @abstractmethod
    def increment_access_count(self, share_id: str) -> int:
        """Atomically add one to the access counter and return the new value."""

    @abstractmethod
    def list_shared_games(self, user_id: str) -> List[SharedGame]:
        """Return the shared games published by ``user_id``, newest first."""

    @abstractmethod
    def delete_shared_game(self, share_id: str) -> None:
        """Delete the shared game or raise :class:`NotFoundError`."""


class InMemoryArtifactStore(ArtifactStore):
    """Keep every record in local process memory, guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: Dict[str, Project] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._shared: Dict[str, SharedGame] = {}

    def get_project(self, project_id: str) -> Project:
        key = validate_key(project_id, field_name="project_id")
        with self._lock:
            try:
                return self._projects[key]
            except KeyError as exc:
                raise NotFoundError(f"Project '{project_id}' does not exist") from exc

    def put_project(self, project: Project) -> None:
        with self._lock:
            self._projects[project.id] = project

    def list_projects(self, user_id: str) -> List[Project]:
        with self._lock:
            owned = [p for p in self._projects.values() if p.user_id == user_id]
        return sorted(owned, key=lambda p: p.created_at, reverse=True)

    def delete_project(self, project_id: str) -> None:
        key = validate_key(project_id, field_name="project_id")
        with self._lock:
            if self._projects.pop(key, None) is None:
                raise NotFoundError(f"Project '{project_id}' does not exist")
            self._messages.pop(key, None)

    def list_messages(self, project_id: str) -> List[Message]:
        key = validate_key(project_id, field_name="project_id")
        with self._lock:
            return ordered_messages(self._messages.get(key, ()))

    def append_message(self, message: Message) -> None:
        with self._lock:
            if message.project_id not in self._projects:
                raise NotFoundError(f"Project '{message.project_id}' does not exist")
            messages = self._messages.setdefault(message.project_id, [])
            if any(existing.id == message.id for existing in messages):
                raise PersistenceError(f"Message '{message.id}' already exists")
            messages.append(message)

    def delete_message(self, project_id: str, message_id: str) -> None:
        key = validate_key(project_id, field_name="project_id")
        with self._lock:
            messages = self._messages.get(key, [])
            remaining = [m for m in messages if m.id != message_id]
            if len(remaining) == len(messages):
                raise NotFoundError(f"Message '{message_id}' does not exist")
            self._messages[key] = remaining

    def clear_messages(self, project_id: str) -> int:
        key = validate_key(project_id, field_name="project_id")
        with self._lock:
            return len(self._messages.pop(key, []))

    def get_shared_game(self, share_id: str) -> SharedGame:
        key = validate_key(share_id, field_name="share_id")
        with self._lock:
            try:
                return self._shared[key]
            except KeyError as exc:
                raise NotFoundError(f"Shared game '{share_id}' does not exist") from exc

    def put_shared_game(self, shared_game: SharedGame) -> None:
        with self._lock:
            self._shared[shared_game.share_id] = shared_game

    def increment_access_count(self, share_id: str) -> int:
        with self._lock:
            current = self.get_shared_game(share_id)
            updated = current.with_access_count(current.access_count + 1)
            self._shared[updated.share_id] = updated
            return updated.access_count

    def list_shared_games(self, user_id: str) -> List[SharedGame]:
        with self._lock:
            owned = [g for g in self._shared.values() if g.user_id == user_id]
        return sorted(owned, key=lambda g: g.created_at, reverse=True)

    def delete_shared_game(self, share_id: str) -> None:
        key = validate_key(share_id, field_name="share_id")
        with self._lock:
            if self._shared.pop(key, None) is None:
                raise NotFoundError(f"Shared game '{share_id}' does not exist")


class FileArtifactStore(ArtifactStore):
    """Persist records as JSON files below ``storage_dir``.

    Every write goes to a temporary file that is atomically renamed into
    place, so readers see either the old or the new document. The lock only
    serialises writers inside this process; deployments with several
    processes should use the DynamoDB store.
    """

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = Path(storage_dir)
        self._lock = threading.RLock()
        for name in ("projects", "messages", "shared"):
            (self.storage_dir / name).mkdir(parents=True, exist_ok=True)

    def get_project(self, project_id: str) -> Project:
        payload = self._read(self._path("projects", project_id))
        if payload is None:
            raise NotFoundError(f"Project '{project_id}' does not exist")
        return Project.from_payload(payload)

    def put_project(self, project: Project) -> None:
        with self._lock:
            self._write(self._path("projects", project.id), project.to_payload())

    def list_projects(self, user_id: str) -> List[Project]:
        projects = [
            Project.from_payload(payload)
            for payload in self._read_all("projects")
            if payload.get("userId") == user_id
        ]
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def delete_project(self, project_id: str) -> None:
        with self._lock:
            project_path = self._path("projects", project_id)
            if not project_path.exists():
                raise NotFoundError(f"Project '{project_id}' does not exist")
            self._path("messages", project_id).unlink(missing_ok=True)
            project_path.unlink()

    def list_messages(self, project_id: str) -> List[Message]:
        payload = self._read(self._path("messages", project_id)) or []
        return ordered_messages(Message.from_payload(entry) for entry in payload)

    def append_message(self, message: Message) -> None:
        with self._lock:
            if not self._path("projects", message.project_id).exists():
                raise NotFoundError(f"Project '{message.project_id}' does not exist")
            path = self._path("messages", message.project_id)
            entries = self._read(path) or []
            if any(entry.get("id") == message.id for entry in entries):
                raise PersistenceError(f"Message '{message.id}' already exists")
            entries.append(message.to_payload())
            self._write(path, entries)

    def delete_message(self, project_id: str, message_id: str) -> None:
        with self._lock:
            path = self._path("messages", project_id)
            entries = self._read(path) or []
            remaining = [entry for entry in entries if entry.get("id") != message_id]
            if len(remaining) == len(entries):
                raise NotFoundError(f"Message '{message_id}' does not exist")
            self._write(path, remaining)

    def clear_messages(self, project_id: str) -> int:
        with self._lock:
            path = self._path("messages", project_id)
            entries = self._read(path) or []
            path.unlink(missing_ok=True)
            return len(entries)

    def get_shared_game(self, share_id: str) -> SharedGame:
        payload = self._read(self._path("shared", share_id))
        if payload is None:
            raise NotFoundError(f"Shared game '{share_id}' does not exist")
        return SharedGame.from_payload(payload)

    def put_shared_game(self, shared_game: SharedGame) -> None:
        with self._lock:
            self._write(
                self._path("shared", shared_game.share_id), shared_game.to_payload()
            )

    def increment_access_count(self, share_id: str) -> int:
        with self._lock:
            current = self.get_shared_game(share_id)
            updated = current.with_access_count(current.access_count + 1)
            self._write(self._path("shared", share_id), updated.to_payload())
            return updated.access_count

    def list_shared_games(self, user_id: str) -> List[SharedGame]:
        games = [
            SharedGame.from_payload(payload)
            for payload in self._read_all("shared")
            if payload.get("userId") == user_id
        ]
        return sorted(games, key=lambda g: g.created_at, reverse=True)

    def delete_shared_game(self, share_id: str) -> None:
        with self._lock:
            path = self._path("shared", share_id)
            if not path.exists():
                raise NotFoundError(f"Shared game '{share_id}' does not exist")
            path.unlink()

    def _path(self, kind: str, identifier: str) -> Path:
        validated = validate_key(identifier, field_name=f"{kind} id")
        if "/" in validated or "\\" in validated or validated.startswith("."):
            raise ValidationError(f"{kind} id contains unsupported characters")
        return self.storage_dir / kind / f"{validated}.json"

    def _read(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Could not read '{path.name}'") from exc

    def _read_all(self, kind: str) -> List[Dict[str, Any]]:
        payloads = []
        for path in sorted((self.storage_dir / kind).glob("*.json")):
            payload = self._read(path)
            if isinstance(payload, dict):
                payloads.append(payload)
        return payloads

    def _write(self, path: Path, payload: Any) -> None:
        temp_name: str | None = None
        try:
            handle, temp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
            )
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(payload, stream, indent=2)
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_name, path)
        except OSError as exc:
            if temp_name is not None:
                Path(temp_name).unlink(missing_ok=True)
            raise PersistenceError(f"Could not write '{path.name}'") from exc


def validate_key(value: str, *, field_name: str) -> str:
    """Return ``value`` stripped, rejecting non-strings and blanks."""

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    stripped = value.strip()
    if not stripped:
        raise ValidationError(f"{field_name} must be a non-empty string")
    return stripped


__all__ = [
    "ArtifactStore",
    "FileArtifactStore",
    "InMemoryArtifactStore",
    "validate_key",
]
