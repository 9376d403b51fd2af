"""Adapter mapping Anthropic's Messages API onto :class:`LLMClient`."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping, Sequence

from ..llm import (
    LLMClient,
    LLMClientError,
    LLMMessage,
    LLMResponse,
    translate_provider_error,
)
from ._common import coerce_mapping, extract_attr, require_str

# The Messages API rejects requests without an explicit token budget.
DEFAULT_MAX_TOKENS = 16000


def _normalise_text_blocks(blocks: Any) -> str:
    if isinstance(blocks, str):
        return blocks
    if isinstance(blocks, Sequence):
        text_parts: list[str] = []
        for item in blocks:
            if extract_attr(item, "type") == "text":
                text_parts.append(str(extract_attr(item, "text", "")))
        if text_parts:
            return "".join(text_parts)
    raise LLMClientError("Anthropic response did not contain textual content")


class AnthropicMessagesClient(LLMClient):
    """Concrete :class:`LLMClient` built on top of the official Anthropic SDK."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        client: Any | None = None,
        default_options: Mapping[str, Any] | MutableMapping[str, Any] | None = None,
        **client_options: Any,
    ) -> None:
        self._model = require_str(model, field_name="model")
        self._default_options = coerce_mapping(default_options)

        if client is None:
            try:
                from anthropic import Anthropic  # type: ignore
            except ImportError as exc:  # pragma: no cover - optional dependency path
                raise ImportError(
                    "AnthropicMessagesClient requires the 'anthropic' package. Install it with 'pip install anthropic'."
                ) from exc

            init_kwargs: dict[str, Any] = dict(client_options)
            if api_key is not None:
                init_kwargs["api_key"] = api_key
            client = Anthropic(**init_kwargs)
        else:
            if client_options:
                raise TypeError(
                    "client_options cannot be provided when supplying a client instance"
                )
        self._client = client

    def complete(
        self,
        messages: Sequence[LLMMessage],
        *,
        temperature: float | None = None,
    ) -> LLMResponse:
        system_parts = [m.content for m in messages if m.role == "system"]
        payload = [
            {"role": message.role, "content": message.content}
            for message in messages
            if message.role != "system"
        ]
        request_kwargs = dict(self._default_options)
        request_kwargs.setdefault("max_tokens", DEFAULT_MAX_TOKENS)
        if system_parts:
            request_kwargs["system"] = "\n\n".join(system_parts)
        if temperature is not None:
            request_kwargs["temperature"] = temperature

        try:
            response = self._client.messages.create(  # type: ignore[call-arg]
                model=self._model,
                messages=payload,
                **request_kwargs,
            )
        except Exception as exc:
            raise translate_provider_error(exc, provider="Anthropic") from exc

        role = require_str(extract_attr(response, "role", "assistant"), field_name="role")
        content = _normalise_text_blocks(extract_attr(response, "content", ""))
        usage = extract_attr(response, "usage", {}) or {}
        metadata: dict[str, str] = {}
        response_id = extract_attr(response, "id")
        if isinstance(response_id, str) and response_id:
            metadata["id"] = response_id
        model_name = extract_attr(response, "model")
        if isinstance(model_name, str) and model_name:
            metadata["model"] = model_name
        stop_reason = extract_attr(response, "stop_reason")
        if isinstance(stop_reason, str) and stop_reason:
            metadata["stop_reason"] = stop_reason

        return LLMResponse(
            message=LLMMessage(role=role, content=content),
            usage=usage,
            metadata=metadata,
        )


__all__ = ["AnthropicMessagesClient"]
