"""Environment-driven configuration for wiring the core services."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .conversation import PendingTurnPolicy
from .dynamodb import (
    DEFAULT_MESSAGES_TABLE,
    DEFAULT_PROJECTS_TABLE,
    DEFAULT_SHARED_GAMES_TABLE,
)

STORE_BACKENDS = ("memory", "file", "dynamodb")


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _normalise_string(value: str | None, *, default: str) -> str:
    if value is None:
        return default

    trimmed = value.strip()
    return trimmed or default


def _optional_string(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _parse_number(
    value: str | None, *, name: str, default: float, integer: bool = False
) -> Any:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip()) if integer else float(value.strip())
    except ValueError as exc:
        kind = "an integer" if integer else "a number"
        raise ValueError(f"{name} must be {kind}.") from exc
    return parsed


def _parse_options(value: str | None) -> Mapping[str, Any]:
    if value is None or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError("GAMANI_LLM_OPTIONS must be a JSON object.") from exc
    if not isinstance(parsed, dict):
        raise ValueError("GAMANI_LLM_OPTIONS must be a JSON object.")
    return parsed


@dataclass(frozen=True)
class GamaniSettings:
    """Deployment settings for the generation and publication services.

    Values come from ``GAMANI_*`` environment variables. Empty strings are
    treated as if the variable was unset and paths are expanded to support
    ``~`` prefixes.
    """

    store: str = "memory"
    store_path: Path | None = None
    aws_region: str = "il-central-1"
    dynamodb_endpoint: str | None = None
    projects_table: str = DEFAULT_PROJECTS_TABLE
    messages_table: str = DEFAULT_MESSAGES_TABLE
    shared_games_table: str = DEFAULT_SHARED_GAMES_TABLE
    llm_provider: str = "openai"
    llm_options: Mapping[str, Any] = field(default_factory=dict)
    generation_timeout: float = 120.0
    generation_max_attempts: int = 3
    generation_initial_backoff: float = 1.0
    generation_min_interval: float = 0.0
    history_limit: int = 10
    lock_timeout: float = 5.0
    pending_turn_policy: PendingTurnPolicy = PendingTurnPolicy.REJECT
    share_base_url: str | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.store not in STORE_BACKENDS:
            raise ValueError(
                f"GAMANI_STORE must be one of {', '.join(STORE_BACKENDS)}."
            )
        if self.store == "file" and self.store_path is None:
            raise ValueError("GAMANI_STORE_PATH is required when GAMANI_STORE=file.")
        if self.generation_timeout <= 0:
            raise ValueError("GAMANI_GENERATION_TIMEOUT must be greater than zero.")
        if self.generation_max_attempts < 1:
            raise ValueError("GAMANI_GENERATION_MAX_ATTEMPTS must be at least 1.")
        if self.generation_initial_backoff < 0:
            raise ValueError("GAMANI_GENERATION_INITIAL_BACKOFF must not be negative.")
        if self.generation_min_interval < 0:
            raise ValueError("GAMANI_GENERATION_MIN_INTERVAL must not be negative.")
        if self.history_limit < 0:
            raise ValueError("GAMANI_HISTORY_LIMIT must not be negative.")
        if self.lock_timeout < 0:
            raise ValueError("GAMANI_LOCK_TIMEOUT must not be negative.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GamaniSettings":
        """Return settings populated from ``environ``.

        Args:
            environ: Optional mapping of environment variables. When omitted,
                :data:`os.environ` is used.
        """

        source = environ if environ is not None else os.environ

        try:
            policy = PendingTurnPolicy.parse(
                _normalise_string(
                    source.get("GAMANI_PENDING_TURN_POLICY"), default="reject"
                )
            )
        except ValueError as exc:
            raise ValueError(
                "GAMANI_PENDING_TURN_POLICY must be 'reject' or 'resume'."
            ) from exc

        return cls(
            store=_normalise_string(source.get("GAMANI_STORE"), default="memory").lower(),
            store_path=_normalise_path(source.get("GAMANI_STORE_PATH")),
            aws_region=_normalise_string(
                source.get("GAMANI_AWS_REGION") or source.get("AWS_REGION"),
                default="il-central-1",
            ),
            dynamodb_endpoint=_optional_string(source.get("GAMANI_DYNAMODB_ENDPOINT")),
            projects_table=_normalise_string(
                source.get("GAMANI_PROJECTS_TABLE"), default=DEFAULT_PROJECTS_TABLE
            ),
            messages_table=_normalise_string(
                source.get("GAMANI_MESSAGES_TABLE"), default=DEFAULT_MESSAGES_TABLE
            ),
            shared_games_table=_normalise_string(
                source.get("GAMANI_SHARED_GAMES_TABLE"),
                default=DEFAULT_SHARED_GAMES_TABLE,
            ),
            llm_provider=_normalise_string(
                source.get("GAMANI_LLM_PROVIDER"), default="openai"
            ),
            llm_options=_parse_options(source.get("GAMANI_LLM_OPTIONS")),
            generation_timeout=_parse_number(
                source.get("GAMANI_GENERATION_TIMEOUT"),
                name="GAMANI_GENERATION_TIMEOUT",
                default=120.0,
            ),
            generation_max_attempts=_parse_number(
                source.get("GAMANI_GENERATION_MAX_ATTEMPTS"),
                name="GAMANI_GENERATION_MAX_ATTEMPTS",
                default=3,
                integer=True,
            ),
            generation_initial_backoff=_parse_number(
                source.get("GAMANI_GENERATION_INITIAL_BACKOFF"),
                name="GAMANI_GENERATION_INITIAL_BACKOFF",
                default=1.0,
            ),
            generation_min_interval=_parse_number(
                source.get("GAMANI_GENERATION_MIN_INTERVAL"),
                name="GAMANI_GENERATION_MIN_INTERVAL",
                default=0.0,
            ),
            history_limit=_parse_number(
                source.get("GAMANI_HISTORY_LIMIT"),
                name="GAMANI_HISTORY_LIMIT",
                default=10,
                integer=True,
            ),
            lock_timeout=_parse_number(
                source.get("GAMANI_LOCK_TIMEOUT"),
                name="GAMANI_LOCK_TIMEOUT",
                default=5.0,
            ),
            pending_turn_policy=policy,
            share_base_url=_optional_string(source.get("GAMANI_SHARE_BASE_URL")),
            log_level=_normalise_string(
                source.get("GAMANI_LOG_LEVEL"), default="INFO"
            ).upper(),
        )

    def llm_config(self) -> Mapping[str, Any]:
        """Return the provider configuration understood by the registry."""

        return {"provider": self.llm_provider, "options": dict(self.llm_options)}


__all__ = ["GamaniSettings", "STORE_BACKENDS"]
