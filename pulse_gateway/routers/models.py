from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request

from pulse_gateway.middleware.auth import require_gateway_key
from pulse_gateway.models.responses import ModelInfo, ModelsResponse
from pulse_gateway.services.key_service import AuthenticatedKey

router = APIRouter(prefix="/v1", tags=["models"])


@router.get("/models", response_model=ModelsResponse)
async def models(request: Request, key: AuthenticatedKey = Depends(require_gateway_key)) -> ModelsResponse:
    now = int(time.time())
    routes = await request.app.state.connection_service.routable_models(key.organization_id)
    visible = [
        route
        for route in routes
        if route.model not in key.blocked_models and (not key.allowed_models or route.model in key.allowed_models)
    ]
    return ModelsResponse(
        data=[
            ModelInfo(id=route.model, created=now, owned_by=route.provider.value)
            for route in sorted(visible, key=lambda r: r.model)
        ]
    )
