from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Request

from pulse_gateway.middleware.errors import serialize_error
from pulse_gateway.models.errors import GatewayError
from pulse_gateway.services.attribution import AttributionHints
from pulse_gateway.services.gateway import GatewayStream, new_request_id

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def request_id_for(request: Request) -> str:
    return request.headers.get("x-request-id") or new_request_id()


def attribution_hints(request: Request) -> AttributionHints:
    return AttributionHints.from_headers(request.headers)


def sse_event(payload: dict[str, Any] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, separators=(",", ":"))
    return f"data: {data}\n\n"


def _chunk(stream: GatewayStream, created: int, delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
    return {
        "id": stream.request_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": stream.model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


async def chat_completion_events(stream: GatewayStream) -> AsyncIterator[str]:
    """Render a gateway stream as OpenAI ``chat.completion.chunk`` SSE events.

    A failure after the stream opened is sent as a final error envelope,
    followed by ``[DONE]``.
    """
    created = int(time.time())
    try:
        yield sse_event(_chunk(stream, created, {"role": "assistant"}, None))
        async for text in stream:
            if text:
                yield sse_event(_chunk(stream, created, {"content": text}, None))
        yield sse_event(_chunk(stream, created, {}, "stop"))
    except GatewayError as exc:
        logger.warning("stream failed", extra={"request_id": stream.request_id, "code": exc.code})
        yield sse_event(serialize_error(exc))
    finally:
        await stream.aclose()
    yield sse_event("[DONE]")
