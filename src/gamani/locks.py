"""Per-key mutual exclusion used to serialise changes to a project's messages."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator

from .errors import ConcurrencyConflict


@dataclass
class _Entry:
    lock: threading.Lock
    users: int = 0


class KeyedLocks:
    """Hand out one lock per key, dropping it once nobody holds or waits on it.

    Unrelated keys never contend: the registry's own lock is only held while
    looking up or releasing an entry, never while a key's lock is held.
    """

    def __init__(self, *, timeout: float | None = 5.0) -> None:
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be non-negative or None")
        self._timeout = timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(
        self, key: str, *, timeout: float | None = None, blocking: bool = False
    ) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the ``with`` block.

        ``blocking=True`` waits for the lock however long it takes and ignores
        both ``timeout`` and the registry default.

        Raises:
            ConcurrencyConflict: When the lock cannot be acquired within
                ``timeout`` (or the registry default).
        """

        entry = self._checkout(key)
        wait = None if blocking else (self._timeout if timeout is None else timeout)
        try:
            acquired = entry.lock.acquire(timeout=-1 if wait is None else wait)
            if not acquired:
                raise ConcurrencyConflict(
                    f"'{key}' is busy with another operation; retry shortly"
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def active_keys(self) -> int:
        """Return how many keys currently have a holder or waiter."""

        with self._guard:
            return len(self._entries)

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(lock=threading.Lock())
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)


__all__ = ["KeyedLocks"]
