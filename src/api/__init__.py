"""API package exports."""

from src.api.devices import router as devices_router
from src.api.middleware import CorrelationIdMiddleware
from src.api.routes import router
from src.api.security import router as security_router
from src.api.tokens import router as tokens_router

__all__ = [
    "router",
    "devices_router",
    "tokens_router",
    "security_router",
    "CorrelationIdMiddleware",
]
