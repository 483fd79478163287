"""Registry of provider adapter classes, keyed by provider."""

from __future__ import annotations

from collections.abc import Callable, Mapping

import httpx

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.base import ProviderAdapter


class AdapterRegistry:
    _adapters: dict[Provider, type[ProviderAdapter]] = {}

    @classmethod
    def register(cls, provider: Provider, adapter_class: type[ProviderAdapter]) -> None:
        cls._adapters[provider] = adapter_class

    @classmethod
    def get(cls, provider: Provider | str) -> type[ProviderAdapter]:
        """Get the adapter class for a provider.

        Raises:
            KeyError: If no adapter is registered for the provider
        """
        key = Provider(provider)
        if key not in cls._adapters:
            raise KeyError(f"Provider '{key.value}' is not registered")
        return cls._adapters[key]

    @classmethod
    def list_providers(cls) -> list[Provider]:
        return list(cls._adapters.keys())


def register_adapter(provider: Provider) -> Callable[[type[ProviderAdapter]], type[ProviderAdapter]]:
    """Decorator to register an adapter class.

    Example:
        @register_adapter(Provider.OPENAI)
        class OpenAIAdapter(ProviderAdapter):
            ...
    """

    def decorator(cls: type[ProviderAdapter]) -> type[ProviderAdapter]:
        AdapterRegistry.register(provider, cls)
        return cls

    return decorator


def build_adapters(
    http_client: httpx.AsyncClient,
    *,
    timeout: float = 60.0,
    api_bases: Mapping[str, str] | None = None,
) -> dict[Provider, ProviderAdapter]:
    """Instantiate one adapter per registered provider, sharing the HTTP client."""
    bases = api_bases or {}
    return {
        provider: adapter_class(http_client, api_base=bases.get(provider.value), timeout=timeout)
        for provider, adapter_class in AdapterRegistry._adapters.items()
    }
