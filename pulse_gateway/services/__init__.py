from .connection_service import ConnectionService
from .cost_guard import CostGuard
from .entitlements import EntitlementService
from .gateway import Gateway, GatewayRequest, GatewayResult, GatewayStream
from .key_service import AuthenticatedKey, KeyService
from .limit_counter import RateLimiter
from .model_router import ModelRouter
from .policies import PolicyService

__all__ = [
    "AuthenticatedKey",
    "ConnectionService",
    "CostGuard",
    "EntitlementService",
    "Gateway",
    "GatewayRequest",
    "GatewayResult",
    "GatewayStream",
    "KeyService",
    "ModelRouter",
    "PolicyService",
    "RateLimiter",
]
