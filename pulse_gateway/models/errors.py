from __future__ import annotations

from typing import Any

from pulse_gateway.utils.redaction import redact_secrets


class GatewayError(Exception):
    status_code: int = 500
    error_type: str = "server_error"
    message: str = "Internal server error"
    code: str | None = "internal_error"

    def __init__(self, message: str | None = None, param: str | None = None, code: str | None = None):
        self.message = redact_secrets(message or self.message)
        self.param = param
        self.code = code or self.code
        super().__init__(self.message)

    def details(self) -> dict[str, Any]:
        """Extra fields merged into the serialized error envelope."""
        return {}


class AuthError(GatewayError):
    status_code = 401
    error_type = "authentication_error"
    message = "Invalid API key"
    code = "invalid_key"

    _messages = {
        "invalid_key": "Invalid API key",
        "revoked": "API key has been revoked",
        "disabled": "API key is disabled",
        "expired": "API key has expired",
    }

    def __init__(self, reason: str = "invalid_key", message: str | None = None):
        super().__init__(message=message or self._messages.get(reason), code=reason)
        self.reason = reason
        if reason != "invalid_key":
            self.status_code = 403


class RestrictionError(GatewayError):
    status_code = 403
    error_type = "permission_denied"
    message = "Model is not allowed for this API key"
    code = "model_blocked"

    def __init__(self, model: str, message: str | None = None, code: str | None = None, param: str | None = "model"):
        super().__init__(message=message or f"Model '{model}' is not allowed for this API key", param=param, code=code)
        self.model = model


class AttributionError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    message = "App attribution is required for this API key (x-pulse-app header)"
    code = "attribution_required"

    def __init__(self, message: str | None = None):
        super().__init__(message=message, param="x-pulse-app")


class RateLimitError(GatewayError):
    status_code = 429
    error_type = "rate_limit_error"
    message = "Rate limit exceeded"
    code = "rate_limit_exceeded"

    def __init__(self, message: str | None = None, retry_after: int | None = None, limit: int | None = None, **kwargs):
        super().__init__(message=message, **kwargs)
        self.retry_after = retry_after
        self.limit = limit


class QuotaError(GatewayError):
    status_code = 429
    error_type = "insufficient_quota"
    message = "Cost limit exceeded"
    code = "cost_limit_exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        period: str | None = None,
        limit: Any = None,
        current: Any = None,
    ):
        super().__init__(message=message, code=code)
        self.period = period
        self.limit = limit
        self.current = current

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.period:
            payload["period"] = self.period
        if self.limit is not None:
            payload["limit_eur"] = str(self.limit)
        if self.current is not None:
            payload["current_eur"] = str(self.current)
        return payload


class RoutingError(GatewayError):
    status_code = 404
    error_type = "routing_error"
    message = "No route configured for model"
    code = "no_route"

    _messages = {
        "no_route": "No enabled route is configured for model '{model}'",
        "no_active_connection": "No active {provider} connection for model '{model}'",
        "connection_unreadable": "Stored credentials for the {provider} connection could not be read",
    }

    def __init__(self, reason: str = "no_route", *, model: str | None = None, provider: str | None = None):
        template = self._messages.get(reason, self.message)
        super().__init__(message=template.format(model=model or "", provider=provider or "provider"), param="model", code=reason)
        self.reason = reason
        self.model = model
        self.provider = provider
        if reason != "no_route":
            self.status_code = 503


class ProviderError(GatewayError):
    status_code = 502
    error_type = "provider_error"
    message = "Upstream provider error"
    code = "provider_error"

    def __init__(
        self,
        message: str | None = None,
        *,
        upstream_status: int | None = None,
        provider: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message=message, code=code)
        self.upstream_status = upstream_status
        self.provider = provider
        self.status_code = self._translate_status(upstream_status)

    def _translate_status(self, upstream_status: int | None) -> int:
        if upstream_status is None:
            return type(self).status_code
        if upstream_status == 429:
            return 429
        if 400 <= upstream_status < 500:
            return 400
        return 502

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.provider:
            payload["provider"] = self.provider
        if self.upstream_status is not None:
            payload["upstream_status"] = self.upstream_status
        return payload


class ProviderTimeoutError(ProviderError):
    status_code = 504
    error_type = "timeout_error"
    message = "Upstream provider timed out"
    code = "timeout"


class EntitlementError(GatewayError):
    status_code = 403
    error_type = "upgrade_required"
    message = "Your plan does not include this feature"
    code = "upgrade_required"

    def __init__(self, feature: str, message: str | None = None, *, plan: str | None = None, required_plan: str | None = None):
        super().__init__(message=message)
        self.feature = feature
        self.plan = plan
        self.required_plan = required_plan

    def details(self) -> dict[str, Any]:
        return {"feature": self.feature, "plan": self.plan, "required": self.required_plan}


class InvalidRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    message = "Invalid request"
    code = "invalid_request"


class NotFoundError(GatewayError):
    status_code = 404
    error_type = "not_found"
    message = "Resource not found"
    code = "not_found"


class ConflictError(GatewayError):
    status_code = 409
    error_type = "conflict"
    message = "Resource already exists"
    code = "conflict"
