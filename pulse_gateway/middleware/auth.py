from __future__ import annotations

import hmac

from fastapi import Header, Request

from pulse_gateway.models.errors import AuthError, InvalidRequestError
from pulse_gateway.services.key_service import AuthenticatedKey


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


async def require_gateway_key(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthenticatedKey:
    """Authenticate the caller's gateway key and keep it on ``request.state``."""
    gateway = request.app.state.gateway
    key = await gateway.authenticate(extract_bearer_token(authorization))
    request.state.gateway_key = key
    return key


async def require_master_key(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_pulse_org: str | None = Header(default=None, alias="x-pulse-org"),
) -> str:
    """Guard the admin API; returns the organization the call acts on."""
    configured = getattr(request.app.state.settings, "master_key", None)
    if not configured:
        raise AuthError("disabled", message="Admin API is disabled: no master key configured")

    provided = extract_bearer_token(authorization)
    if provided is None or not hmac.compare_digest(provided, configured):
        raise AuthError("invalid_key", message="Invalid master key")

    if not x_pulse_org:
        raise InvalidRequestError(message="x-pulse-org header is required", param="x-pulse-org")
    return x_pulse_org
