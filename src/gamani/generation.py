"""Generation engine turning a prompt and conversation into a new game version.

The engine is an untrusted, latency-variable dependency. :class:`GameGenerator`
speaks to an :class:`~gamani.llm.LLMClient`; :class:`ResilientGenerator` wraps
any engine with bounded retries and an overall deadline so callers never wait
longer than they asked to.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent import futures
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Protocol, Sequence

from .errors import GamaniError, GenerationFailed, ValidationError
from .llm import (
    LLMClient,
    LLMClientError,
    LLMErrorCategory,
    LLMErrorClassifier,
    LLMMessage,
    LLMRejectedError,
    LLMRetryPolicy,
    LLMTimeoutError,
    RateLimiter,
    SleepFunction,
    call_with_retries,
)
from .models import Message, MessageRole

logger = logging.getLogger(__name__)

_CODE_BLOCK = re.compile(r"```html[^\n]*\n(.*?)(?:```|\Z)", re.DOTALL | re.IGNORECASE)

DEFAULT_HISTORY_LIMIT = 10

DEFAULT_SYSTEM_PROMPT = (
    "You are Gamani, a friendly AI assistant that specializes in creating "
    "children's games. You can have natural conversations and help with game "
    "development when requested.\n\n"
    "Guidelines for responses:\n"
    "- Have natural, engaging conversations with users\n"
    "- Only create or modify games when the user explicitly requests it "
    '(e.g., "create a game", "make a racing game", "change the background color")\n'
    "- For general questions or conversation, respond naturally without generating games\n"
    "- When you do create/modify a game, always explain what you're doing in your response\n\n"
    "When creating or modifying games:\n"
    "- Create complete, fun, interactive games suitable for children\n"
    "- Use English text for all UI elements and instructions\n"
    "- Make games interactive and engaging with bright colors\n"
    "- Ensure games work on both desktop and mobile\n"
    "- Always return the complete game as a single HTML document wrapped in an "
    "```html code block\n"
    "- Provide a clear explanation of what you created or changed\n"
    "- Include game instructions in your explanation"
)


class GenerationError(GamaniError):
    """Base class for failures reported by a generation engine."""


class InvalidPrompt(GenerationError, ValidationError):
    """The caller supplied an unusable prompt. Never retried."""


class UpstreamUnavailable(GenerationError):
    """The model provider could not serve the request. Retryable."""


class UpstreamRejected(GenerationError):
    """The model provider refused the request, e.g. on content policy. Not retried."""


class GenerationTimeout(GenerationError):
    """No answer arrived before the deadline. Retryable within the attempt budget."""


class GenerationCancelled(GenerationError):
    """The caller abandoned the request while it was in flight."""


@dataclass(frozen=True)
class ConversationTurn:
    """A prior turn as seen by the engine: just who said what."""

    role: MessageRole
    content: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", MessageRole.parse(self.role))
        if not isinstance(self.content, str):
            raise ValidationError("conversation content must be a string")

    @classmethod
    def from_message(cls, message: Message) -> "ConversationTurn":
        return cls(role=message.role, content=message.content)


@dataclass(frozen=True)
class GenerationRequest:
    """Input for one generation: the prompt plus the state it builds on."""

    prompt: str
    conversation: Sequence[ConversationTurn] = ()
    current_game: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise InvalidPrompt("prompt must be a non-empty string")
        object.__setattr__(self, "prompt", self.prompt.strip())
        object.__setattr__(self, "conversation", tuple(self.conversation))
        if self.current_game is not None and not self.current_game.strip():
            object.__setattr__(self, "current_game", None)

    @classmethod
    def for_messages(
        cls, prompt: str, history: Iterable[Message], current_game: str | None
    ) -> "GenerationRequest":
        """Build a request from stored messages preceding the prompt."""

        return cls(
            prompt=prompt,
            conversation=[ConversationTurn.from_message(m) for m in history],
            current_game=current_game,
        )


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of a successful generation.

    ``game_code`` is ``None`` when the assistant answered conversationally
    without producing a new version of the game.
    """

    content: str
    game_code: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        content = (self.content or "").strip()
        game_code = self.game_code
        if game_code is not None and not game_code.strip():
            game_code = None
        if not content and game_code is None:
            raise UpstreamUnavailable("generation returned neither content nor code")
        object.__setattr__(self, "content", content)
        object.__setattr__(self, "game_code", game_code)
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


class GenerationEngine(Protocol):
    """Anything able to turn a :class:`GenerationRequest` into a result."""

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Produce a result or raise a :class:`GenerationError`."""


def split_reply(text: str) -> tuple[str, str | None]:
    """Separate the explanation from the first fenced HTML block in ``text``."""

    match = _CODE_BLOCK.search(text)
    if match is None:
        return text.strip(), None
    code = match.group(1).strip()
    explanation = (text[: match.start()] + text[match.end() :]).strip()
    explanation = re.sub(r"\n{3,}", "\n\n", explanation)
    return explanation, code or None


class GameGenerator:
    """Generation engine backed by an :class:`LLMClient`."""

    def __init__(
        self,
        llm_client: LLMClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        temperature: float | None = None,
    ) -> None:
        if not isinstance(system_prompt, str) or not system_prompt.strip():
            raise ValueError("system_prompt must be a non-empty string")
        if not isinstance(history_limit, int) or history_limit < 0:
            raise ValueError("history_limit must be zero or a positive integer")
        self._llm = llm_client
        self._system_prompt = system_prompt.strip()
        self._history_limit = history_limit
        self._temperature = temperature

    def generate(self, request: GenerationRequest) -> GenerationResult:
        messages = self.build_messages(request)
        try:
            response = self._llm.complete(messages, temperature=self._temperature)
        except LLMTimeoutError as exc:
            raise GenerationTimeout(str(exc)) from exc
        except LLMRejectedError as exc:
            raise UpstreamRejected(str(exc)) from exc
        except LLMClientError as exc:
            raise UpstreamUnavailable(str(exc)) from exc

        content, game_code = split_reply(response.message.content)
        logger.info(
            "Generated reply: prompt_length=%d history=%d has_current_game=%s "
            "reply_length=%d has_code=%s",
            len(request.prompt),
            len(request.conversation),
            request.current_game is not None,
            len(response.message.content),
            game_code is not None,
        )
        return GenerationResult(
            content=content, game_code=game_code, metadata=response.metadata
        )

    def build_messages(self, request: GenerationRequest) -> Sequence[LLMMessage]:
        """Render the system and user messages sent to the model."""

        sections: list[str] = []
        history = self._recent(request.conversation)
        if history:
            lines = [
                f"{'User' if turn.role is MessageRole.USER else 'Assistant'}: "
                f"{turn.content or '(updated the game code)'}"
                for turn in history
            ]
            sections.append("Previous conversation context:\n" + "\n".join(lines))
        if request.current_game is not None:
            sections.append(
                "Current game code for reference/modification:\n" + request.current_game
            )
        sections.append(f'Current user request: "{request.prompt}"')

        return [
            LLMMessage(role="system", content=self._system_prompt),
            LLMMessage(role="user", content="\n\n".join(sections)),
        ]

    def _recent(self, turns: Sequence[ConversationTurn]) -> Sequence[ConversationTurn]:
        if self._history_limit == 0:
            return ()
        return turns[-self._history_limit :]


def generation_error_classifier() -> LLMErrorClassifier:
    """Classifier retrying unavailability and timeouts only."""

    classifier = LLMErrorClassifier()
    classifier.register(
        LLMErrorCategory.TRANSIENT, UpstreamUnavailable, GenerationTimeout
    )
    return classifier


class ResilientGenerator:
    """Wrap an engine with bounded retries and a per-call deadline.

    Each attempt runs on a worker thread; the caller stops waiting when the
    deadline passes or ``cancel_event`` is set, whichever comes first. An
    abandoned attempt may still finish in the background, its result is
    discarded.

    A shared ``rate_limiter`` spaces out attempts across every caller, so
    retries and concurrent turns cannot burst the upstream provider.
    """

    def __init__(
        self,
        engine: GenerationEngine,
        *,
        timeout: float = 120.0,
        retry_policy: LLMRetryPolicy | None = None,
        classifier: LLMErrorClassifier | None = None,
        rate_limiter: RateLimiter | None = None,
        max_workers: int = 8,
        sleep: SleepFunction | None = None,
        clock: Callable[[], float] | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._engine = engine
        self._timeout = float(timeout)
        self._policy = retry_policy or LLMRetryPolicy()
        self._classifier = classifier or generation_error_classifier()
        self._rate_limiter = rate_limiter
        self._sleep = sleep or time.sleep
        self._clock = clock or time.monotonic
        self._poll_interval = poll_interval
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="gamani-generate"
        )

    @property
    def timeout(self) -> float:
        """Default overall budget, in seconds, for one call to :meth:`generate`."""

        return self._timeout

    def close(self) -> None:
        """Stop accepting work; in-flight attempts are not awaited."""

        self._executor.shutdown(wait=False, cancel_futures=True)

    def generate(
        self,
        request: GenerationRequest,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        """Run the wrapped engine, retrying transient failures until the deadline.

        Raises:
            InvalidPrompt, UpstreamRejected: Immediately, without retrying.
            GenerationCancelled: When ``cancel_event`` fires.
            GenerationFailed: Once retryable failures exhaust the attempt budget
                or the deadline.
        """

        budget = self._timeout if timeout is None else float(timeout)
        if budget <= 0:
            raise ValueError("timeout must be positive")
        deadline = self._clock() + budget
        attempts = 0

        def attempt() -> GenerationResult:
            nonlocal attempts
            attempts += 1
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("generation cancelled by caller")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise GenerationTimeout("generation deadline already passed")
            future = self._executor.submit(self._engine.generate, request)
            return self._await(future, deadline, cancel_event)

        def on_retry(attempt_number: int, error: Exception, delay: float) -> None:
            logger.warning(
                "Generation attempt %d failed (%s); retrying in %.2fs",
                attempt_number,
                type(error).__name__,
                delay,
            )

        try:
            return call_with_retries(
                attempt,
                retry_policy=self._policy,
                classifier=self._classifier,
                rate_limiter=self._rate_limiter,
                sleep=self._sleep,
                deadline=deadline,
                clock=self._clock,
                on_retry=on_retry,
            )
        except (InvalidPrompt, UpstreamRejected, GenerationCancelled):
            raise
        except GenerationError as exc:
            logger.warning(
                "Generation failed after %d attempt(s): %s", attempts, type(exc).__name__
            )
            raise GenerationFailed(
                f"Generation failed after {attempts} attempt(s): {exc}",
                attempts=attempts,
            ) from exc
        except Exception as exc:
            logger.exception("Generation engine raised an unexpected error")
            raise GenerationFailed(
                f"Generation engine error: {exc}", attempts=attempts
            ) from exc

    def _await(
        self,
        future: "futures.Future[GenerationResult]",
        deadline: float,
        cancel_event: threading.Event | None,
    ) -> GenerationResult:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise GenerationCancelled("generation cancelled by caller")
            remaining = deadline - self._clock()
            if remaining <= 0:
                future.cancel()
                raise GenerationTimeout("generation did not finish before the deadline")
            wait = remaining if cancel_event is None else min(remaining, self._poll_interval)
            try:
                return future.result(timeout=wait)
            except futures.TimeoutError:
                # On 3.11+ this also catches a TimeoutError raised by the engine.
                if future.done():
                    raise
                continue
            except futures.CancelledError as exc:
                raise GenerationCancelled("generation attempt was cancelled") from exc


__all__ = [
    "ConversationTurn",
    "DEFAULT_SYSTEM_PROMPT",
    "GameGenerator",
    "GenerationCancelled",
    "GenerationEngine",
    "GenerationError",
    "GenerationRequest",
    "GenerationResult",
    "GenerationTimeout",
    "InvalidPrompt",
    "ResilientGenerator",
    "UpstreamRejected",
    "UpstreamUnavailable",
    "generation_error_classifier",
    "split_reply",
]
