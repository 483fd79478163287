from .auth import extract_bearer_token, require_gateway_key, require_master_key
from .errors import register_exception_handlers, serialize_error

__all__ = [
    "extract_bearer_token",
    "register_exception_handlers",
    "require_gateway_key",
    "require_master_key",
    "serialize_error",
]
