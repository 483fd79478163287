from __future__ import annotations

from typing import Any

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse
from pulse_gateway.providers.registry import register_adapter

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024


@register_adapter(Provider.ANTHROPIC)
class AnthropicAdapter(ProviderAdapter):
    provider = Provider.ANTHROPIC
    display_name = "Anthropic"
    default_api_base = "https://api.anthropic.com/v1"
    health_check_model = "claude-3-haiku-20240307"

    def endpoint(self, request: ProviderRequest) -> str:
        return f"{self.api_base}/messages"

    def build_headers(self, secret: str) -> dict[str, str]:
        return {
            "x-api-key": secret,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        system_parts: list[str] = []
        messages: list[dict[str, str]] = []
        for message in request.messages:
            role = message["role"]
            if role in ("system", "developer"):
                system_parts.append(message["content"])
                continue
            messages.append({"role": "user" if role == "user" else "assistant", "content": message["content"]})

        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
            "temperature": self.temperature(request),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def parse_response(self, data: dict[str, Any], request: ProviderRequest) -> ProviderResponse:
        content = "".join(
            block.get("text", "") for block in data.get("content") or [] if block.get("type", "text") == "text"
        )
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            raw=data,
        )
