"""Test configuration for the Gamani project."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import threading
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from gamani.generation import GenerationRequest, GenerationResult
from gamani.llm import LLMClient, LLMMessage, LLMResponse


class MockLLMClient(LLMClient):
    """Deterministic LLM client used in tests to avoid real API calls."""

    def __init__(
        self,
        responses: Sequence[LLMResponse | str | Exception] | None = None,
    ) -> None:
        self.calls: list[list[LLMMessage]] = []
        self._responses: list[LLMResponse | Exception] = []

        if responses:
            for response in responses:
                self.queue_response(response)

    def queue_response(
        self,
        response: LLMResponse | str | Exception,
        *,
        role: str = "assistant",
        usage: Mapping[str, int] | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        """Append a response (or an error to raise) for the next call."""

        if isinstance(response, (LLMResponse, Exception)):
            payload = response
        else:
            message = LLMMessage(role=role, content=response)
            payload = LLMResponse(
                message=message,
                usage=dict(usage or {}),
                metadata=dict(metadata or {}),
            )

        self._responses.append(payload)

    def complete(
        self,
        messages: Sequence[LLMMessage],
        *,
        temperature: float | None = None,
    ) -> LLMResponse:
        del temperature  # This mock ignores sampling parameters.

        self.calls.append(list(messages))
        if not self._responses:
            raise AssertionError(
                "MockLLMClient expected a queued response but none remain",
            )

        payload = self._responses.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return payload


class ScriptedEngine:
    """Generation engine replaying canned results or errors in order.

    Entries may be :class:`GenerationResult` instances, exceptions to raise,
    or callables receiving the request.
    """

    def __init__(self, *script: Any) -> None:
        self.requests: list[GenerationRequest] = []
        self._script = list(script)
        self._lock = threading.Lock()

    def queue(self, *entries: Any) -> None:
        with self._lock:
            self._script.extend(entries)

    def generate(self, request: GenerationRequest) -> GenerationResult:
        with self._lock:
            self.requests.append(request)
            if not self._script:
                raise AssertionError("ScriptedEngine ran out of scripted results")
            entry = self._script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        if callable(entry):
            return entry(request)
        return entry


class StepClock:
    """Datetime clock advancing by a fixed step on every call."""

    def __init__(
        self,
        start: datetime | None = None,
        *,
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


class FakeClock:
    """Deterministic monotonic clock used to simulate time progression in tests."""

    def __init__(self) -> None:
        self._now = 0.0

    def __call__(self) -> float:
        return self._now

    def advance(self, delta: float) -> None:
        self._now += delta


@pytest.fixture()
def mock_llm_client() -> MockLLMClient:
    """Return a deterministic mock client for use in tests."""

    return MockLLMClient()


@pytest.fixture()
def make_mock_llm_client() -> Any:
    """Factory fixture for creating mock LLM clients with canned responses."""

    def _factory(
        responses: Sequence[LLMResponse | str | Exception] | None = None,
    ) -> MockLLMClient:
        return MockLLMClient(responses=responses)

    return _factory


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_sleep(fake_clock: FakeClock) -> Callable[[float], None]:
    sleeps: list[float] = []

    def _sleep(duration: float) -> None:
        sleeps.append(duration)
        fake_clock.advance(duration)

    _sleep.calls = sleeps  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture()
def step_clock() -> StepClock:
    return StepClock()


@pytest.fixture()
def make_scripted_engine() -> Callable[..., ScriptedEngine]:
    """Factory fixture building engines from a script of results and errors."""

    def _factory(*script: Any) -> ScriptedEngine:
        return ScriptedEngine(*script)

    return _factory


__all__ = [
    "FakeClock",
    "MockLLMClient",
    "ScriptedEngine",
    "StepClock",
    "make_mock_llm_client",
    "make_scripted_engine",
    "mock_llm_client",
]
