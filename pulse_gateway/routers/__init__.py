from .admin import router as admin_router
from .chat import router as chat_router
from .health import router as health_router
from .metrics import router as metrics_router
from .models import router as models_router
from .responses import router as responses_router

__all__ = [
    "admin_router",
    "chat_router",
    "health_router",
    "metrics_router",
    "models_router",
    "responses_router",
]
