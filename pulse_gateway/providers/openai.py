from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse, StreamDelta
from pulse_gateway.providers.registry import register_adapter

logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions wire format shared by OpenAI, Mistral and xAI."""

    def endpoint(self, request: ProviderRequest) -> str:
        return f"{self.api_base}/chat/completions"

    def build_headers(self, secret: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {secret}",
            "Content-Type": "application/json",
        }

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in request.messages],
            "temperature": self.temperature(request),
        }
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def parse_response(self, data: dict[str, Any], request: ProviderRequest) -> ProviderResponse:
        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            raw=data,
        )


@register_adapter(Provider.OPENAI)
class OpenAIAdapter(OpenAICompatibleAdapter):
    provider = Provider.OPENAI
    display_name = "OpenAI"
    default_api_base = "https://api.openai.com/v1"
    health_check_model = "gpt-4o-mini"
    supports_streaming = True

    async def stream(self, secret: str, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        payload = self.build_payload(request)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        input_tokens: int | None = None
        output_tokens: int | None = None
        try:
            async with self.http_client.stream(
                "POST",
                self.endpoint(request),
                headers=self.build_headers(secret),
                json=payload,
                timeout=self.timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self.status_error(response, secret)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("skipping malformed stream chunk", extra={"provider": self.provider.value})
                        continue

                    usage = chunk.get("usage")
                    if usage:
                        input_tokens = int(usage.get("prompt_tokens") or 0)
                        output_tokens = int(usage.get("completion_tokens") or 0)
                    for choice in chunk.get("choices") or []:
                        text = (choice.get("delta") or {}).get("content")
                        if text:
                            yield StreamDelta(text=text)
        except httpx.HTTPError as exc:
            raise self.map_error(exc, secret) from None

        yield StreamDelta(done=True, input_tokens=input_tokens, output_tokens=output_tokens)
