from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from pulse_gateway.middleware.auth import require_gateway_key
from pulse_gateway.models.errors import InvalidRequestError
from pulse_gateway.models.requests import ResponsesRequest
from pulse_gateway.models.responses import OutputText, ResponsesResponse, Usage
from pulse_gateway.routers.utils import SSE_HEADERS, attribution_hints, chat_completion_events, request_id_for
from pulse_gateway.services.gateway import GatewayRequest
from pulse_gateway.services.key_service import AuthenticatedKey

router = APIRouter(prefix="/v1", tags=["responses"])


def input_messages(payload: ResponsesRequest) -> list[dict[str, Any]]:
    """Map a Responses API ``input`` onto chat messages."""
    messages: list[dict[str, Any]] = []
    if payload.instructions:
        messages.append({"role": "system", "content": payload.instructions})
    if not payload.input:
        raise InvalidRequestError(message="input is required", param="input")
    items = [payload.input] if isinstance(payload.input, str) else payload.input
    for item in items:
        if isinstance(item, str):
            messages.append({"role": "user", "content": item})
        else:
            messages.append(item.model_dump())
    return messages


@router.post("/responses", response_model=None)
async def create_response(
    request: Request,
    payload: ResponsesRequest,
    key: AuthenticatedKey = Depends(require_gateway_key),
) -> ResponsesResponse | StreamingResponse:
    gateway = request.app.state.gateway
    gateway_request = GatewayRequest(
        model=payload.model,
        messages=input_messages(payload),
        max_tokens=payload.max_output_tokens,
        temperature=payload.temperature,
        hints=attribution_hints(request),
        source="responses",
        request_id=request_id_for(request),
    )

    if payload.stream:
        stream = await gateway.invoke_stream(key, gateway_request)
        return StreamingResponse(
            chat_completion_events(stream),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "x-request-id": stream.request_id},
            background=BackgroundTask(stream.aclose),
        )

    result = await gateway.invoke(key, gateway_request)
    return ResponsesResponse(
        id=f"resp_{result.request_id}",
        created=int(time.time()),
        model=result.model,
        output_text=OutputText(text=result.content),
        usage=Usage(
            prompt_tokens=result.input_tokens,
            completion_tokens=result.output_tokens,
            total_tokens=result.total_tokens,
        ),
    )
