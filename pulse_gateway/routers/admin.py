"""Master-key protected administration API.

Every call acts on the organization named by the ``x-pulse-org`` header.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from pulse_gateway.middleware.auth import require_master_key
from pulse_gateway.models.domain import OrganizationRecord
from pulse_gateway.models.requests import (
    CreateConnectionRequest,
    CreateKeyRequest,
    CreatePolicyRequest,
    CreateRouteRequest,
    CreateWebhookRequest,
    UpdateConnectionRequest,
    UpdateKeyRequest,
    UpdatePolicyRequest,
    UpdateRouteRequest,
    UpdateWebhookRequest,
    UpsertOrganizationRequest,
)
from pulse_gateway.models.responses import (
    ConnectionResponse,
    ConnectionTestResponse,
    CreatedWebhookResponse,
    IssuedKeyResponse,
    KeyResponse,
    OrganizationResponse,
    PolicyResponse,
    RouteResponse,
    WebhookResponse,
    WebhookTestResponse,
)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.put("/organization", response_model=OrganizationResponse)
async def upsert_organization(
    request: Request,
    payload: UpsertOrganizationRequest,
    organization_id: str = Depends(require_master_key),
) -> OrganizationResponse:
    record = OrganizationRecord(id=organization_id, **payload.model_dump())
    record = await request.app.state.repository.save_organization(record)
    return OrganizationResponse.model_validate(record)


@router.get("/keys", response_model=list[KeyResponse])
async def list_keys(request: Request, organization_id: str = Depends(require_master_key)) -> list[KeyResponse]:
    records = await request.app.state.key_service.list_keys(organization_id)
    return [KeyResponse.model_validate(record) for record in records]


@router.post("/keys", response_model=IssuedKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_key(
    request: Request,
    payload: CreateKeyRequest,
    organization_id: str = Depends(require_master_key),
) -> IssuedKeyResponse:
    options = payload.model_dump(exclude_none=True, exclude={"label", "created_by_user_id"})
    issued = await request.app.state.key_service.issue_key(
        organization_id,
        created_by_user_id=payload.created_by_user_id,
        label=payload.label,
        **options,
    )
    return IssuedKeyResponse(**KeyResponse.model_validate(issued.record).model_dump(), secret=issued.secret)


@router.patch("/keys/{key_id}", response_model=KeyResponse)
async def update_key(
    request: Request,
    key_id: str,
    payload: UpdateKeyRequest,
    organization_id: str = Depends(require_master_key),
) -> KeyResponse:
    record = await request.app.state.key_service.update_key(
        organization_id, key_id, **payload.model_dump(exclude_unset=True)
    )
    return KeyResponse.model_validate(record)


@router.post("/keys/{key_id}/rotate", response_model=IssuedKeyResponse)
async def rotate_key(request: Request, key_id: str, organization_id: str = Depends(require_master_key)) -> IssuedKeyResponse:
    issued = await request.app.state.key_service.rotate_key(organization_id, key_id)
    return IssuedKeyResponse(**KeyResponse.model_validate(issued.record).model_dump(), secret=issued.secret)


@router.delete("/keys/{key_id}", response_model=KeyResponse)
async def revoke_key(request: Request, key_id: str, organization_id: str = Depends(require_master_key)) -> KeyResponse:
    record = await request.app.state.key_service.revoke_key(organization_id, key_id)
    return KeyResponse.model_validate(record)


@router.get("/providers", response_model=list[ConnectionResponse])
async def list_connections(request: Request, organization_id: str = Depends(require_master_key)) -> list[ConnectionResponse]:
    records = await request.app.state.connection_service.list_connections(organization_id)
    return [ConnectionResponse.model_validate(record) for record in records]


@router.post("/providers", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def create_connection(
    request: Request,
    payload: CreateConnectionRequest,
    organization_id: str = Depends(require_master_key),
) -> ConnectionResponse:
    record = await request.app.state.connection_service.create_connection(
        organization_id, payload.provider, payload.name, payload.api_key
    )
    return ConnectionResponse.model_validate(record)


@router.patch("/providers/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    request: Request,
    connection_id: str,
    payload: UpdateConnectionRequest,
    organization_id: str = Depends(require_master_key),
) -> ConnectionResponse:
    record = await request.app.state.connection_service.set_connection_status(
        organization_id, connection_id, payload.status
    )
    return ConnectionResponse.model_validate(record)


@router.post("/providers/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    request: Request,
    connection_id: str,
    organization_id: str = Depends(require_master_key),
) -> ConnectionTestResponse:
    result = await request.app.state.connection_service.test_connection(organization_id, connection_id)
    return ConnectionTestResponse(ok=result.ok, latency_ms=result.latency_ms, error=result.error, code=result.code)


@router.get("/routes", response_model=list[RouteResponse])
async def list_routes(request: Request, organization_id: str = Depends(require_master_key)) -> list[RouteResponse]:
    records = await request.app.state.connection_service.list_routes(organization_id)
    return [RouteResponse.model_validate(record) for record in records]


@router.post("/routes", response_model=RouteResponse, status_code=status.HTTP_201_CREATED)
async def create_route(
    request: Request,
    payload: CreateRouteRequest,
    organization_id: str = Depends(require_master_key),
) -> RouteResponse:
    record = await request.app.state.connection_service.create_route(
        organization_id,
        payload.provider,
        payload.model,
        priority=payload.priority,
        enabled=payload.enabled,
        max_cost_per_request_eur=payload.max_cost_per_request_eur,
    )
    return RouteResponse.model_validate(record)


@router.patch("/routes/{route_id}", response_model=RouteResponse)
async def update_route(
    request: Request,
    route_id: str,
    payload: UpdateRouteRequest,
    organization_id: str = Depends(require_master_key),
) -> RouteResponse:
    record = await request.app.state.connection_service.update_route(
        organization_id, route_id, **payload.model_dump(exclude_unset=True)
    )
    return RouteResponse.model_validate(record)


@router.get("/policies", response_model=list[PolicyResponse])
async def list_policies(request: Request, organization_id: str = Depends(require_master_key)) -> list[PolicyResponse]:
    records = await request.app.state.policy_service.list_policies(organization_id)
    return [PolicyResponse.model_validate(record) for record in records]


@router.post("/policies", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: Request,
    payload: CreatePolicyRequest,
    organization_id: str = Depends(require_master_key),
) -> PolicyResponse:
    settings = payload.model_dump()
    record = await request.app.state.policy_service.create_policy(organization_id, settings.pop("name"), **settings)
    return PolicyResponse.model_validate(record)


@router.patch("/policies/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    request: Request,
    policy_id: str,
    payload: UpdatePolicyRequest,
    organization_id: str = Depends(require_master_key),
) -> PolicyResponse:
    record = await request.app.state.policy_service.update_policy(
        organization_id, policy_id, **payload.model_dump(exclude_unset=True)
    )
    return PolicyResponse.model_validate(record)


@router.delete("/policies/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(request: Request, policy_id: str, organization_id: str = Depends(require_master_key)) -> None:
    await request.app.state.policy_service.delete_policy(organization_id, policy_id)


@router.get("/webhooks", response_model=list[WebhookResponse])
async def list_webhooks(request: Request, organization_id: str = Depends(require_master_key)) -> list[WebhookResponse]:
    records = await request.app.state.webhook_service.list_webhooks(organization_id)
    return [WebhookResponse.model_validate(record) for record in records]


@router.post("/webhooks", response_model=CreatedWebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: Request,
    payload: CreateWebhookRequest,
    organization_id: str = Depends(require_master_key),
) -> CreatedWebhookResponse:
    created = await request.app.state.webhook_service.create_webhook(
        organization_id, str(payload.url), payload.events, payload.secret
    )
    return CreatedWebhookResponse(**WebhookResponse.model_validate(created.record).model_dump(), secret=created.secret)


@router.patch("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    request: Request,
    webhook_id: str,
    payload: UpdateWebhookRequest,
    organization_id: str = Depends(require_master_key),
) -> WebhookResponse:
    record = await request.app.state.webhook_service.set_enabled(organization_id, webhook_id, payload.enabled)
    return WebhookResponse.model_validate(record)


@router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(request: Request, webhook_id: str, organization_id: str = Depends(require_master_key)) -> None:
    await request.app.state.webhook_service.delete_webhook(organization_id, webhook_id)


@router.post("/webhooks/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    request: Request,
    webhook_id: str,
    organization_id: str = Depends(require_master_key),
) -> WebhookTestResponse:
    delivered = await request.app.state.webhook_service.send_test(organization_id, webhook_id)
    return WebhookTestResponse(delivered=delivered)
