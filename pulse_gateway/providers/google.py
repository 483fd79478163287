from __future__ import annotations

from typing import Any

from pulse_gateway.models.domain import Provider
from pulse_gateway.providers.base import ProviderAdapter, ProviderRequest, ProviderResponse
from pulse_gateway.providers.registry import register_adapter
from pulse_gateway.utils.tokens import estimate_tokens


@register_adapter(Provider.GOOGLE)
class GoogleAdapter(ProviderAdapter):
    """Gemini ``generateContent``. The key travels in a header, never in the URL."""

    provider = Provider.GOOGLE
    display_name = "Google"
    default_api_base = "https://generativelanguage.googleapis.com/v1beta"
    health_check_model = "gemini-1.5-flash"

    @staticmethod
    def upstream_model(model: str) -> str:
        for prefix in ("google/", "google-"):
            if model.startswith(prefix):
                return model[len(prefix):]
        return model

    def endpoint(self, request: ProviderRequest) -> str:
        return f"{self.api_base}/models/{self.upstream_model(request.model)}:generateContent"

    def build_headers(self, secret: str) -> dict[str, str]:
        return {
            "x-goog-api-key": secret,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        system_parts: list[dict[str, str]] = []
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            role = message["role"]
            if role in ("system", "developer"):
                system_parts.append({"text": message["content"]})
                continue
            contents.append({"role": "user" if role == "user" else "model", "parts": [{"text": message["content"]}]})

        generation_config: dict[str, Any] = {"temperature": self.temperature(request)}
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens

        payload: dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    def parse_response(self, data: dict[str, Any], request: ProviderRequest) -> ProviderResponse:
        candidates = data.get("candidates") or []
        content = ""
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            content = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata")
        if usage:
            input_tokens = int(usage.get("promptTokenCount") or 0)
            output_tokens = int(usage.get("candidatesTokenCount") or 0)
        else:
            input_tokens = estimate_tokens("".join(m["content"] for m in request.messages))
            output_tokens = estimate_tokens(content)
        return ProviderResponse(content=content, input_tokens=input_tokens, output_tokens=output_tokens, raw=data)
