"""Middleware for request processing and observability."""

from uuid import uuid4

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.config import get_settings


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to every request.

    - Generates UUID4 per request (or uses X-Correlation-Id header if present)
    - Stores in request.state.correlation_id
    - Takes the client IP from X-Forwarded-For only when the peer is a
      configured trusted proxy
    - Binds correlation id, client IP and user agent to the structlog context,
      where log lines and security events pick them up
    - Adds X-Correlation-Id response header
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with correlation ID tracking."""
        # Use existing correlation ID from header or generate new one
        correlation_id = request.headers.get("X-Correlation-Id", str(uuid4()))

        # Store in request state for access by route handlers
        request.state.correlation_id = correlation_id

        peer = request.client.host if request.client else None
        client_ip = peer
        # Only a configured proxy may speak for the client's address
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for and peer in get_settings().trusted_proxies:
            client_ip = forwarded_for.split(",")[0].strip()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            client_ip=client_ip,
            user_agent=request.headers.get("User-Agent"),
        )

        # Process request
        response = await call_next(request)

        # Add correlation ID to response headers
        response.headers["X-Correlation-Id"] = correlation_id

        return response
