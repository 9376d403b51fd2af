"""Adapter that exposes OpenAI's chat completion API via :class:`LLMClient`."""

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


def _normalise_message_content(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, Sequence):
        text_parts: list[str] = []
        for item in payload:
            if isinstance(item, Mapping) and item.get("type") == "text":
                text_parts.append(str(item.get("text", "")))
        if text_parts:
            return "".join(text_parts)
    raise LLMClientError("OpenAI response did not include textual content")


class OpenAIChatClient(LLMClient):
    """Concrete :class:`LLMClient` powered by the OpenAI Python SDK."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        organization: str | None = None,
        client: Any | None = None,
        default_options: Mapping[str, Any] | MutableMapping[str, Any] | None = None,
        **client_options: Any,
    ) -> None:
        self._model = require_str(model, field_name="model")
        self._default_options = coerce_mapping(default_options)

        if client is None:
            try:
                from openai import OpenAI  # type: ignore
            except (
                ImportError
            ) as exc:  # pragma: no cover - depends on optional dependency
                raise ImportError(
                    "OpenAIChatClient requires the 'openai' package. Install it with 'pip install openai'."
                ) from exc

            init_kwargs: dict[str, Any] = dict(client_options)
            if api_key is not None:
                init_kwargs["api_key"] = api_key
            if organization is not None:
                init_kwargs["organization"] = organization
            client = OpenAI(**init_kwargs)
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
        payload = [
            {"role": message.role, "content": message.content} for message in messages
        ]

        request_kwargs = dict(self._default_options)
        if temperature is not None:
            request_kwargs["temperature"] = temperature

        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=payload,
                **request_kwargs,
            )
        except Exception as exc:
            raise translate_provider_error(exc, provider="OpenAI") from exc

        choices = extract_attr(response, "choices")
        if not choices:
            raise LLMClientError("OpenAI completion returned no choices")
        first_choice = choices[0]
        message_payload = extract_attr(first_choice, "message")
        if message_payload is None:
            raise LLMClientError("OpenAI completion missing message payload")

        role = require_str(
            extract_attr(message_payload, "role", "assistant"), field_name="role"
        )
        content = _normalise_message_content(extract_attr(message_payload, "content"))

        usage = extract_attr(response, "usage", {}) or {}
        metadata: dict[str, str] = {}
        response_id = extract_attr(response, "id")
        model_name = extract_attr(response, "model")
        if isinstance(response_id, str) and response_id:
            metadata["id"] = response_id
        if isinstance(model_name, str) and model_name:
            metadata["model"] = model_name

        return LLMResponse(
            message=LLMMessage(role=role, content=content),
            usage=usage,
            metadata=metadata,
        )


__all__ = ["OpenAIChatClient"]
