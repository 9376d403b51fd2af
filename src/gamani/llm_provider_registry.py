"""Registry resolving the LLM provider that backs game generation."""

from __future__ import annotations

import importlib
from typing import Any, Dict, Mapping, Protocol, Sequence

from .llm import LLMClient


class ProviderFactory(Protocol):
    """Callable returning an :class:`LLMClient` configured from keyword options."""

    def __call__(self, **options: Any) -> LLMClient:
        """Create a new ``LLMClient``."""


class LLMProviderRegistry:
    """Resolve provider factories by registered name or ``module:factory`` path."""

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register ``factory`` under the case-insensitive ``name``."""

        key = _validate_identifier(name).lower()
        if key in self._providers:
            raise ValueError(f"Provider '{name}' is already registered")
        if not callable(factory):
            raise TypeError("factory must be callable")
        self._providers[key] = factory

    def available_providers(self) -> Sequence[str]:
        """Return the sorted list of registered provider names."""

        return sorted(self._providers)

    def create(self, identifier: str, **options: Any) -> LLMClient:
        """Instantiate the provider named ``identifier`` with ``options``."""

        factory = self._resolve(identifier)
        client = factory(**options)
        if not isinstance(client, LLMClient):
            raise TypeError("Provider factory did not return an LLMClient instance")
        return client

    def create_from_config(self, config: Mapping[str, Any] | str) -> LLMClient:
        """Instantiate a provider from ``{"provider": ..., "options": {...}}``.

        A bare string is treated as a provider identifier without options.
        """

        if isinstance(config, str):
            return self.create(config)
        if not isinstance(config, Mapping):
            raise TypeError("config must be a mapping or identifier string")
        if "provider" not in config:
            raise ValueError("config is missing 'provider'")
        provider = config["provider"]
        if not isinstance(provider, str):
            raise TypeError("config 'provider' must be a string")
        options = config.get("options") or {}
        if not isinstance(options, Mapping):
            raise TypeError("config 'options' must be a mapping of keyword arguments")
        if any(not isinstance(key, str) for key in options):
            raise TypeError("option keys must be strings")
        return self.create(provider, **dict(options))

    def _resolve(self, identifier: str) -> ProviderFactory:
        name = _validate_identifier(identifier)
        factory = self._providers.get(name.lower())
        if factory is not None:
            return factory
        if ":" not in name and "." not in name:
            raise KeyError(f"No provider registered under '{identifier}'")
        return _import_factory(name)


def default_registry() -> LLMProviderRegistry:
    """Return a registry pre-populated with the bundled adapters."""

    from .llm_providers import register_builtin_providers

    registry = LLMProviderRegistry()
    register_builtin_providers(registry)
    return registry


def _validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str):
        raise TypeError("provider identifier must be a string")
    stripped = identifier.strip()
    if not stripped:
        raise ValueError("provider identifier must be non-empty")
    return stripped


def _import_factory(identifier: str) -> ProviderFactory:
    if ":" in identifier:
        module_name, _, attr_name = identifier.partition(":")
    else:
        module_name, _, attr_name = identifier.rpartition(".")
    if not module_name or not attr_name:
        raise ValueError(
            "Dynamic provider identifiers must include a module and attribute"
        )
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise LookupError(f"Could not import provider module '{module_name}'") from exc
    factory = getattr(module, attr_name, None)
    if factory is None:
        raise LookupError(f"Factory '{attr_name}' not found in module '{module_name}'")
    if not callable(factory):
        raise TypeError(
            f"Imported attribute '{attr_name}' from '{module_name}' is not callable"
        )
    return factory  # type: ignore[no-any-return]


__all__ = ["LLMProviderRegistry", "ProviderFactory", "default_registry"]
