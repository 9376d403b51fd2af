"""Error taxonomy shared by the conversation, publication, and storage layers."""

from __future__ import annotations


class GamaniError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(GamaniError, ValueError):
    """Raised when caller input is malformed (empty prompt, unknown role, ...)."""


class NotFoundError(GamaniError, KeyError):
    """Raised for unknown identifiers and ownership mismatches alike."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class EmptyProjectError(GamaniError):
    """Raised when publishing a project that has no generated code yet."""


class ConcurrencyConflict(GamaniError):
    """Raised when another turn currently holds the project.

    The caller should retry the whole turn after a short delay; the
    conversation itself is left untouched.
    """


class PendingTurnError(ConcurrencyConflict):
    """Raised when a project ends with a user turn that never got a response."""

    def __init__(self, project_id: str, message_id: str) -> None:
        super().__init__(
            f"Project '{project_id}' has a pending user turn '{message_id}'; "
            "resume or discard it first"
        )
        self.project_id = project_id
        self.message_id = message_id


class GenerationFailed(GamaniError):
    """Raised once the generation engine gives up on a turn."""

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class PersistenceError(GamaniError):
    """Raised when the artifact store fails to read or write durably."""


class Unauthenticated(GamaniError):
    """Raised when the identity provider rejects a credential."""


__all__ = [
    "ConcurrencyConflict",
    "EmptyProjectError",
    "GamaniError",
    "GenerationFailed",
    "NotFoundError",
    "PendingTurnError",
    "PersistenceError",
    "Unauthenticated",
    "ValidationError",
]
