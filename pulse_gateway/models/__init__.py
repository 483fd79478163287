from pulse_gateway.models.errors import (
    AttributionError,
    AuthError,
    ConflictError,
    EntitlementError,
    GatewayError,
    InvalidRequestError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    QuotaError,
    RateLimitError,
    RestrictionError,
    RoutingError,
)

__all__ = [
    "AttributionError",
    "AuthError",
    "ConflictError",
    "EntitlementError",
    "GatewayError",
    "InvalidRequestError",
    "NotFoundError",
    "ProviderError",
    "ProviderTimeoutError",
    "QuotaError",
    "RateLimitError",
    "RestrictionError",
    "RoutingError",
]
