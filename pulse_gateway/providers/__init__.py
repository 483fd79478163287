from pulse_gateway.providers.anthropic import AnthropicAdapter
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse, StreamDelta
from pulse_gateway.providers.google import GoogleAdapter
from pulse_gateway.providers.mistral import MistralAdapter
from pulse_gateway.providers.openai import OpenAIAdapter, OpenAICompatibleAdapter
from pulse_gateway.providers.registry import AdapterRegistry, build_adapters, register_adapter
from pulse_gateway.providers.xai import XAIAdapter

__all__ = [
    "AdapterRegistry",
    "AnthropicAdapter",
    "GoogleAdapter",
    "MistralAdapter",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderRequest",
    "ProviderResponse",
    "StreamDelta",
    "XAIAdapter",
    "build_adapters",
    "register_adapter",
]
