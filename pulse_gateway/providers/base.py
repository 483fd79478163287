from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from pulse_gateway.models.domain import Provider
from pulse_gateway.models.errors import ProviderError, ProviderTimeoutError
from pulse_gateway.utils.redaction import redact_known

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ProviderRequest:
    model: str
    messages: list[dict[str, str]]
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class ProviderResponse:
    content: str
    input_tokens: int
    output_tokens: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class StreamDelta:
    """One streamed fragment. The final delta has ``done=True`` and carries usage when reported."""

    text: str = ""
    done: bool = False
    input_tokens: int | None = None
    output_tokens: int | None = None


class ProviderAdapter(ABC):
    provider: Provider
    display_name: str
    default_api_base: str
    health_check_model: str
    supports_streaming: bool = False

    def __init__(self, http_client: httpx.AsyncClient, api_base: str | None = None, timeout: float = 60.0) -> None:
        self.http_client = http_client
        self.api_base = (api_base or self.default_api_base).rstrip("/")
        self.timeout = timeout

    @abstractmethod
    def endpoint(self, request: ProviderRequest) -> str:
        raise NotImplementedError

    @abstractmethod
    def build_headers(self, secret: str) -> dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def parse_response(self, data: dict[str, Any], request: ProviderRequest) -> ProviderResponse:
        raise NotImplementedError

    async def invoke(self, secret: str, request: ProviderRequest, timeout: float | None = None) -> ProviderResponse:
        try:
            response = await self.http_client.post(
                self.endpoint(request),
                headers=self.build_headers(secret),
                json=self.build_payload(request),
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as exc:
            raise self.map_error(exc, secret) from None

        if response.status_code >= 400:
            raise self.status_error(response, secret)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(
                f"{self.display_name} returned a non-JSON response",
                upstream_status=response.status_code,
                provider=self.provider.value,
            ) from None

        try:
            return self.parse_response(data, request)
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                redact_known(f"{self.display_name} returned an unexpected payload: {exc!r}", secret),
                provider=self.provider.value,
            ) from None

    async def stream(self, secret: str, request: ProviderRequest) -> AsyncIterator[StreamDelta]:
        if False:
            yield StreamDelta()
        raise ProviderError(f"{self.display_name} adapter does not support streaming", provider=self.provider.value)

    async def health_check(self, secret: str, model: str | None = None, timeout: float = 10.0) -> ProviderResponse:
        """Send a minimal completion and fail if it does not answer within ``timeout`` seconds."""
        request = ProviderRequest(
            model=model or self.health_check_model,
            messages=[{"role": "user", "content": "test"}],
            max_tokens=5,
        )
        try:
            return await asyncio.wait_for(self.invoke(secret, request, timeout=timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                f"{self.display_name} did not respond within {timeout:g}s",
                provider=self.provider.value,
            ) from None

    def map_error(self, exc: Exception, secret: str | None = None) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            return ProviderTimeoutError(f"{self.display_name} request timed out", provider=self.provider.value)
        if isinstance(exc, httpx.HTTPStatusError):
            return self.status_error(exc.response, secret)
        logger.warning(
            "provider transport error",
            extra={"provider": self.provider.value, "error": redact_known(str(exc), secret)},
        )
        return ProviderError(
            redact_known(f"{self.display_name} connection failed: {exc}", secret),
            provider=self.provider.value,
        )

    def status_error(self, response: httpx.Response, secret: str | None = None) -> ProviderError:
        detail = self._error_detail(response)
        return ProviderError(
            redact_known(f"{self.display_name} API error ({response.status_code}): {detail}", secret),
            upstream_status=response.status_code,
            provider=self.provider.value,
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return response.reason_phrase

    @staticmethod
    def temperature(request: ProviderRequest) -> float:
        return DEFAULT_TEMPERATURE if request.temperature is None else request.temperature
