from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from pulse_gateway.middleware.auth import require_gateway_key
from pulse_gateway.models.requests import ChatCompletionRequest
from pulse_gateway.models.responses import AssistantMessage, ChatCompletionResponse, Choice, Usage
from pulse_gateway.routers.utils import SSE_HEADERS, attribution_hints, chat_completion_events, request_id_for
from pulse_gateway.services.gateway import GatewayRequest
from pulse_gateway.services.key_service import AuthenticatedKey

router = APIRouter(prefix="/v1", tags=["chat"])


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    request: Request,
    payload: ChatCompletionRequest,
    key: AuthenticatedKey = Depends(require_gateway_key),
) -> ChatCompletionResponse | StreamingResponse:
    gateway = request.app.state.gateway
    gateway_request = GatewayRequest(
        model=payload.model,
        messages=[message.model_dump(exclude_none=True) for message in payload.messages],
        max_tokens=payload.max_tokens,
        temperature=payload.temperature,
        hints=attribution_hints(request),
        source="chat.completions",
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
    return ChatCompletionResponse(
        id=result.request_id,
        created=int(time.time()),
        model=result.model,
        choices=[Choice(index=0, message=AssistantMessage(content=result.content))],
        usage=Usage(
            prompt_tokens=result.input_tokens,
            completion_tokens=result.output_tokens,
            total_tokens=result.total_tokens,
        ),
        provider=result.provider,
        cost_eur=str(result.cost_eur),
    )
