"""Identity contract: turn a credential into a trusted user id."""

from __future__ import annotations

from typing import Mapping, Protocol

from .errors import Unauthenticated


class IdentityProvider(Protocol):
    """Authenticate a credential and return the stable user identifier."""

    def authenticate(self, credential: str) -> str:
        """Return the user id or raise :class:`Unauthenticated`."""


class StaticTokenIdentityProvider:
    """Resolve bearer tokens from a fixed table, for development and tests."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = {
            token.strip(): user_id.strip()
            for token, user_id in tokens.items()
            if token.strip() and user_id.strip()
        }

    def authenticate(self, credential: str) -> str:
        if not isinstance(credential, str):
            raise Unauthenticated("credential must be a string")
        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[len("bearer ") :].strip()
        try:
            return self._tokens[token]
        except KeyError:
            raise Unauthenticated("invalid or expired credential") from None


__all__ = ["IdentityProvider", "StaticTokenIdentityProvider"]
