"""Abstractions for interacting with large language model providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Mapping,
    MutableMapping,
    Protocol,
    Sequence,
    TypeVar,
)

import logging
import random
import threading
import time

logger = logging.getLogger(__name__)


def _validate_text(value: str, *, field_name: str) -> str:
    """Ensure text fields contain non-empty string values."""

    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string, got {type(value)!r}")

    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must be a non-empty string")

    return stripped


@dataclass(frozen=True)
class LLMMessage:
    """Represents a single message exchanged with an LLM service."""

    role: str
    content: str

    def __post_init__(self) -> None:  # pragma: no cover - trivial setters
        role = _validate_text(self.role, field_name="role").lower()
        content = _validate_text(self.content, field_name="content")

        object.__setattr__(self, "role", role)
        object.__setattr__(self, "content", content)


@dataclass(frozen=True)
class LLMResponse:
    """Container describing the result returned by an LLM invocation."""

    message: LLMMessage
    usage: Mapping[str, int] = field(default_factory=dict)
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        usage_proxy = _frozen_int_mapping(self.usage, field_name="usage")
        metadata_proxy = _frozen_str_mapping(self.metadata, field_name="metadata")

        object.__setattr__(self, "usage", usage_proxy)
        object.__setattr__(self, "metadata", metadata_proxy)


def _frozen_int_mapping(
    mapping: Mapping[str, int] | MutableMapping[str, int] | None, *, field_name: str
) -> Mapping[str, int]:
    """Keep integer-valued entries and return an immutable view."""

    if mapping is None:
        data: Mapping[str, int] = {}
    else:
        if not isinstance(mapping, Mapping):
            mapping = _object_to_mapping(mapping)
        data = {
            _validate_text(str(key), field_name=f"{field_name} key"): value
            for key, value in mapping.items()
            if isinstance(value, int) and not isinstance(value, bool)
        }

    return MappingProxyType(dict(data))


def _object_to_mapping(value: Any) -> Mapping[str, Any]:
    # SDK usage objects are pydantic models rather than dicts.
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        dumped = dump()
        if isinstance(dumped, Mapping):
            return dumped
    return dict(getattr(value, "__dict__", {}))


def _frozen_str_mapping(
    mapping: Mapping[str, str] | MutableMapping[str, str] | None, *, field_name: str
) -> Mapping[str, str]:
    """Validate that mapping values are strings and return an immutable view."""

    if mapping is None:
        data: Mapping[str, str] = {}
    else:
        data = {
            _validate_text(str(key), field_name=f"{field_name} key"): _validate_text(
                str(value), field_name=f"{field_name} value"
            )
            for key, value in mapping.items()
        }

    return MappingProxyType(dict(data))


class LLMClient(ABC):
    """Abstract interface encapsulating calls to an LLM provider."""

    @abstractmethod
    def complete(
        self, messages: Sequence[LLMMessage], *, temperature: float | None = None
    ) -> LLMResponse:
        """Generate a completion from a set of chat-style messages."""

    def complete_prompt(
        self, prompt: str, *, temperature: float | None = None
    ) -> LLMResponse:
        """Helper for providers that accept a single user prompt."""

        message = LLMMessage(role="user", content=prompt)
        return self.complete([message], temperature=temperature)


class LLMClientError(RuntimeError):
    """Base exception raised when the LLM client encounters a failure."""


class LLMUnavailableError(LLMClientError):
    """The provider could not be reached or is temporarily overloaded."""


class LLMRejectedError(LLMClientError):
    """The provider refused the request (bad request, content policy, auth)."""


class LLMTimeoutError(LLMClientError):
    """The provider did not answer in time."""


def translate_provider_error(error: Exception, *, provider: str) -> LLMClientError:
    """Map an SDK exception onto the :class:`LLMClientError` hierarchy.

    HTTP 429 and 5xx responses, as well as errors without a status code
    (connection failures), are considered transient. Other 4xx responses are
    rejections. Exceptions whose class name mentions a timeout become
    :class:`LLMTimeoutError`.
    """

    message = f"{provider} completion failed"
    if isinstance(error, TimeoutError) or "timeout" in type(error).__name__.lower():
        return LLMTimeoutError(message)

    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return LLMRejectedError(message)
    return LLMUnavailableError(message)


class LLMErrorCategory(str, Enum):
    """High-level categories used to classify LLM failures."""

    TRANSIENT = "transient"
    FATAL = "fatal"

    def is_retryable(self) -> bool:
        """Return ``True`` when the category should trigger a retry."""

        return self is self.TRANSIENT


class LLMErrorClassifier:
    """Utility for mapping exceptions to :class:`LLMErrorCategory` values."""

    def __init__(
        self,
        *,
        default_category: LLMErrorCategory = LLMErrorCategory.FATAL,
        rules: Sequence[tuple[LLMErrorCategory, type[Exception]]] | None = None,
    ) -> None:
        self._default_category = default_category
        self._rules: list[tuple[type[Exception], LLMErrorCategory]] = []

        if rules is not None:
            for category, exc_type in rules:
                self.register(category, exc_type)

    def register(
        self, category: LLMErrorCategory, *exception_types: type[Exception]
    ) -> None:
        """Register one or more exception types for ``category``."""

        if not exception_types:
            raise ValueError("at least one exception type must be provided")

        for exc_type in exception_types:
            if not isinstance(exc_type, type) or not issubclass(exc_type, Exception):
                raise TypeError(
                    "exception_types must be Exception subclasses, " f"got {exc_type!r}"
                )
            self._rules.append((exc_type, category))

    def classify(self, error: Exception) -> LLMErrorCategory:
        """Return the category associated with ``error``."""

        for exc_type, category in self._rules:
            if isinstance(error, exc_type):
                return category
        return self._default_category


SleepFunction = Callable[[float], None]


class RateLimiter(Protocol):
    """Protocol describing the minimal rate limiter interface used by retries."""

    def acquire(self) -> None:
        """Block until an action is permitted."""


class FixedIntervalRateLimiter:
    """Enforce a minimum delay between successive operations.

    Safe to share between threads: each caller reserves the next free slot
    under a lock and then sleeps until its slot outside of it.
    """

    def __init__(
        self,
        *,
        min_interval: float,
        clock: Callable[[], float] | None = None,
        sleep: SleepFunction | None = None,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")

        self._min_interval = float(min_interval)
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._next_allowed = self._clock()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_allowed)
            self._next_allowed = slot + self._min_interval

        wait_time = slot - now
        if wait_time > 0:
            self._sleep(wait_time)


T = TypeVar("T")


@dataclass(frozen=True)
class LLMRetryPolicy:
    """Configuration controlling retry behaviour for LLM calls."""

    max_attempts: int = 3
    initial_backoff: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff: float = 30.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0:
            raise ValueError("initial_backoff must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_backoff < 0:
            raise ValueError("max_backoff must be non-negative")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")

    def compute_backoff(
        self, attempt: int, *, random_func: Callable[[], float] | None = None
    ) -> float:
        """Return the backoff delay for ``attempt`` (1-indexed)."""

        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        base_delay = self.initial_backoff * (self.backoff_multiplier ** (attempt - 1))
        delay = min(base_delay, self.max_backoff)

        if self.jitter <= 0 or delay == 0:
            return delay

        rng = random_func or random.random
        offset = (rng() * 2 - 1) * (delay * self.jitter)
        return max(0.0, delay + offset)


def call_with_retries(
    operation: Callable[[], T],
    *,
    retry_policy: LLMRetryPolicy | None = None,
    classifier: LLMErrorClassifier | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: SleepFunction | None = None,
    random_func: Callable[[], float] | None = None,
    deadline: float | None = None,
    clock: Callable[[], float] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    """Execute ``operation`` with retry, backoff, and rate limiting support.

    ``deadline`` is an absolute value of ``clock`` (``time.monotonic`` by
    default). A retry whose backoff would end past the deadline is not
    attempted; the last error is raised instead.
    """

    policy = retry_policy or LLMRetryPolicy()
    error_classifier = classifier or LLMErrorClassifier()
    sleep_fn = sleep or time.sleep
    now = clock or time.monotonic

    attempt = 1
    while True:
        if rate_limiter is not None:
            rate_limiter.acquire()

        try:
            return operation()
        except Exception as error:
            category = error_classifier.classify(error)
            if not category.is_retryable() or attempt >= policy.max_attempts:
                raise

            delay = policy.compute_backoff(attempt, random_func=random_func)
            if deadline is not None and now() + delay >= deadline:
                logger.warning(
                    "Not retrying after attempt %d: deadline would be exceeded",
                    attempt,
                )
                raise

            if on_retry is not None:
                on_retry(attempt, error, delay)
            if delay > 0:
                sleep_fn(delay)

            attempt += 1


__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMErrorCategory",
    "LLMErrorClassifier",
    "LLMMessage",
    "LLMRejectedError",
    "LLMResponse",
    "LLMRetryPolicy",
    "LLMTimeoutError",
    "LLMUnavailableError",
    "RateLimiter",
    "FixedIntervalRateLimiter",
    "call_with_retries",
    "translate_provider_error",
]
