"""Artifact store backed by Amazon DynamoDB tables."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Mapping, Protocol

from .errors import NotFoundError, PersistenceError
from .models import Message, Project, SharedGame, ordered_messages
from .store import ArtifactStore, validate_key

logger = logging.getLogger(__name__)

DEFAULT_PROJECTS_TABLE = "gamani-projects"
DEFAULT_MESSAGES_TABLE = "gamani-messages"
DEFAULT_SHARED_GAMES_TABLE = "gamani-shared-games"

_CONDITION_FAILED = "ConditionalCheckFailedException"


class _TableProtocol(Protocol):
    def get_item(self, **kwargs: Any) -> Mapping[str, Any]:
        """Fetch a single item by key."""

    def put_item(self, **kwargs: Any) -> Any:
        """Write a whole item."""

    def update_item(self, **kwargs: Any) -> Mapping[str, Any]:
        """Apply an update expression to an item."""

    def delete_item(self, **kwargs: Any) -> Any:
        """Remove an item by key."""

    def scan(self, **kwargs: Any) -> Mapping[str, Any]:
        """Scan the table, optionally filtered."""


def _error_code(error: Exception) -> str | None:
    response = getattr(error, "response", None)
    if isinstance(response, Mapping):
        details = response.get("Error")
        if isinstance(details, Mapping):
            code = details.get("Code")
            return str(code) if code is not None else None
    return None


class DynamoDBArtifactStore(ArtifactStore):
    """Persist projects, messages, and shared games in three DynamoDB tables.

    Message appends use a conditional put so a message is written once or not
    at all, and the access counter relies on DynamoDB's atomic ``ADD``.
    Reads are strongly consistent: a turn reads back the user message it has
    just written before appending the reply.
    """

    def __init__(
        self,
        *,
        projects_table: _TableProtocol | None = None,
        messages_table: _TableProtocol | None = None,
        shared_games_table: _TableProtocol | None = None,
        projects_table_name: str = DEFAULT_PROJECTS_TABLE,
        messages_table_name: str = DEFAULT_MESSAGES_TABLE,
        shared_games_table_name: str = DEFAULT_SHARED_GAMES_TABLE,
        region_name: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        if projects_table is None or messages_table is None or shared_games_table is None:
            try:
                import boto3  # type: ignore[import-not-found]
            except ImportError as exc:  # pragma: no cover - defensive guard
                raise RuntimeError(
                    "boto3 is required to use DynamoDBArtifactStore but is not installed."
                ) from exc

            resource = boto3.resource(
                "dynamodb", region_name=region_name, endpoint_url=endpoint_url
            )
            projects_table = projects_table or resource.Table(projects_table_name)
            messages_table = messages_table or resource.Table(messages_table_name)
            shared_games_table = shared_games_table or resource.Table(
                shared_games_table_name
            )

        self._projects = projects_table
        self._messages = messages_table
        self._shared = shared_games_table

    def get_project(self, project_id: str) -> Project:
        key = validate_key(project_id, field_name="project_id")
        item = self._get(self._projects, {"id": key})
        if item is None:
            raise NotFoundError(f"Project '{project_id}' does not exist")
        return Project.from_payload(item)

    def put_project(self, project: Project) -> None:
        self._call(self._projects.put_item, Item=project.to_payload())

    def list_projects(self, user_id: str) -> List[Project]:
        projects = [
            Project.from_payload(item)
            for item in self._scan_where(self._projects, "userId", user_id)
        ]
        return sorted(projects, key=lambda p: p.created_at, reverse=True)

    def delete_project(self, project_id: str) -> None:
        key = validate_key(project_id, field_name="project_id")
        self._conditional_delete(
            self._projects,
            {"id": key},
            condition="attribute_exists(id)",
            missing=f"Project '{project_id}' does not exist",
        )
        # Orphaned messages are invisible once the project is gone.
        removed = self.clear_messages(key)
        logger.info("Deleted project %s and %d message(s)", key, removed)

    def list_messages(self, project_id: str) -> List[Message]:
        key = validate_key(project_id, field_name="project_id")
        return ordered_messages(
            Message.from_payload(item)
            for item in self._scan_where(self._messages, "projectId", key)
        )

    def append_message(self, message: Message) -> None:
        try:
            self._messages.put_item(
                Item=message.to_payload(),
                ConditionExpression="attribute_not_exists(id)",
            )
        except Exception as exc:
            if _error_code(exc) == _CONDITION_FAILED:
                raise PersistenceError(f"Message '{message.id}' already exists") from exc
            raise PersistenceError(f"Could not append message '{message.id}'") from exc

    def delete_message(self, project_id: str, message_id: str) -> None:
        project_key = validate_key(project_id, field_name="project_id")
        key = validate_key(message_id, field_name="message_id")
        self._conditional_delete(
            self._messages,
            {"id": key},
            condition="attribute_exists(id) AND projectId = :pid",
            values={":pid": project_key},
            missing=f"Message '{message_id}' does not exist in project '{project_id}'",
        )

    def clear_messages(self, project_id: str) -> int:
        key = validate_key(project_id, field_name="project_id")
        removed = 0
        for item in list(self._scan_where(self._messages, "projectId", key)):
            self._call(self._messages.delete_item, Key={"id": item["id"]})
            removed += 1
        return removed

    def get_shared_game(self, share_id: str) -> SharedGame:
        key = validate_key(share_id, field_name="share_id")
        item = self._get(self._shared, {"shareId": key})
        if item is None:
            raise NotFoundError(f"Shared game '{share_id}' does not exist")
        return SharedGame.from_payload(item)

    def put_shared_game(self, shared_game: SharedGame) -> None:
        self._call(self._shared.put_item, Item=shared_game.to_payload())

    def increment_access_count(self, share_id: str) -> int:
        key = validate_key(share_id, field_name="share_id")
        try:
            result = self._shared.update_item(
                Key={"shareId": key},
                UpdateExpression="ADD accessCount :inc",
                ConditionExpression="attribute_exists(shareId)",
                ExpressionAttributeValues={":inc": 1},
                ReturnValues="UPDATED_NEW",
            )
        except Exception as exc:
            if _error_code(exc) == _CONDITION_FAILED:
                raise NotFoundError(f"Shared game '{share_id}' does not exist") from exc
            raise PersistenceError(
                f"Could not record access for shared game '{share_id}'"
            ) from exc
        attributes = result.get("Attributes") or {}
        return int(attributes["accessCount"])

    def list_shared_games(self, user_id: str) -> List[SharedGame]:
        games = [
            SharedGame.from_payload(item)
            for item in self._scan_where(self._shared, "userId", user_id)
        ]
        return sorted(games, key=lambda g: g.created_at, reverse=True)

    def delete_shared_game(self, share_id: str) -> None:
        key = validate_key(share_id, field_name="share_id")
        self._conditional_delete(
            self._shared,
            {"shareId": key},
            condition="attribute_exists(shareId)",
            missing=f"Shared game '{share_id}' does not exist",
        )

    def _get(self, table: _TableProtocol, key: Dict[str, str]) -> Mapping[str, Any] | None:
        result = self._call(table.get_item, Key=key, ConsistentRead=True)
        return result.get("Item") if result else None

    def _scan_where(
        self, table: _TableProtocol, attribute: str, value: str
    ) -> Iterator[Mapping[str, Any]]:
        kwargs: Dict[str, Any] = {
            "FilterExpression": "#attr = :value",
            "ExpressionAttributeNames": {"#attr": attribute},
            "ExpressionAttributeValues": {":value": value},
            "ConsistentRead": True,
        }
        while True:
            page = self._call(table.scan, **kwargs)
            yield from page.get("Items", [])
            last_key = page.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key

    def _conditional_delete(
        self,
        table: _TableProtocol,
        key: Dict[str, str],
        *,
        condition: str,
        missing: str,
        values: Dict[str, Any] | None = None,
    ) -> None:
        kwargs: Dict[str, Any] = {"Key": key, "ConditionExpression": condition}
        if values:
            kwargs["ExpressionAttributeValues"] = values
        try:
            table.delete_item(**kwargs)
        except Exception as exc:
            if _error_code(exc) == _CONDITION_FAILED:
                raise NotFoundError(missing) from exc
            raise PersistenceError(f"Could not delete {key}") from exc

    @staticmethod
    def _call(operation: Any, **kwargs: Any) -> Any:
        try:
            return operation(**kwargs)
        except Exception as exc:
            raise PersistenceError(f"DynamoDB request failed: {exc}") from exc


__all__ = [
    "DEFAULT_MESSAGES_TABLE",
    "DEFAULT_PROJECTS_TABLE",
    "DEFAULT_SHARED_GAMES_TABLE",
    "DynamoDBArtifactStore",
]
