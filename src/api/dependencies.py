"""FastAPI dependencies for authentication and request signing."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.config import get_settings
from src.exceptions import AdminRequiredError, TokenNotFoundError
from src.models.security_event import SecurityEventType
from src.models.token import MobileToken
from src.models.user import User
from src.services.auth_service import AuthService
from src.services.security_event_service import SecurityEventService
from src.services.signature_service import SignatureService, SignedRequest
from src.services.token_service import TokenService
from src.services.user_service import UserService

ROTATION_HEADER = "X-Token-Rotation-Recommended"

bearer_scheme = HTTPBearer(auto_error=False)


def _require_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or not credentials.credentials:
        raise TokenNotFoundError("missing bearer token")
    return credentials.credentials


def _looks_like_jwt(token: str) -> bool:
    # Mobile tokens are urlsafe base64 and never contain dots
    return token.count(".") == 2


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Raw bearer value, without resolving it."""
    return _require_credentials(credentials)


async def get_current_token(
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> MobileToken:
    """Resolve a full-ability mobile access token from the Bearer header.

    When auto-rotation is enabled and the token is past the rotation
    threshold, the response carries a rotation hint header.

    Raises:
        TokenNotFoundError / TokenExpiredError / MissingAbilityError
    """
    token_service = TokenService()
    token = await token_service.authenticate(_require_credentials(credentials))

    if token_service.settings.auto_rotate and token_service.should_rotate(token):
        response.headers[ROTATION_HEADER] = "true"

    structlog.contextvars.bind_contextvars(user_id=str(token.user_id))
    return token


async def _load_user(user_id: UUID) -> User:
    user = await UserService().get_by_id(user_id)
    if user is None or not user.is_active:
        raise TokenNotFoundError("user not found or inactive")

    structlog.contextvars.bind_contextvars(user_id=str(user.id), tenant_id=user.tenant_id)
    return user


async def get_current_user(
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """Resolve the user behind a session JWT or a mobile access token.

    Args:
        credentials: Bearer token from Authorization header

    Returns:
        Authenticated, active User

    Raises:
        TokenNotFoundError 401: If the token is invalid or the user is missing/inactive
    """
    raw = _require_credentials(credentials)

    if _looks_like_jwt(raw):
        try:
            payload = AuthService().validate_session_token(raw)
            user_id = UUID(payload["sub"])
        except (ValueError, KeyError, TypeError) as e:
            raise TokenNotFoundError(f"invalid session token: {e}")
        return await _load_user(user_id)

    token = await get_current_token(response, credentials)
    return await _load_user(token.user_id)


async def require_admin(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> User:
    """Require the current user to have admin privileges.

    Args:
        current_user: Authenticated user from get_current_user

    Returns:
        Admin User model

    Raises:
        AdminRequiredError 403: If user is not an admin
    """
    if not current_user.is_admin:
        await SecurityEventService().record(
            SecurityEventType.PERMISSION_DENIED,
            user_id=current_user.id,
            context={"path": request.url.path, "required": "admin"},
        )
        raise AdminRequiredError("admin access required")
    return current_user


async def get_signed_request(request: Request) -> SignedRequest:
    """Collect method, path, raw body and signing headers from the request."""
    settings = get_settings()
    body = await request.body()
    # Bound by CorrelationIdMiddleware, which resolves trusted proxies
    client_ip = structlog.contextvars.get_contextvars().get("client_ip")
    if client_ip is None and request.client:
        client_ip = request.client.host
    return SignedRequest.from_headers(
        request.method,
        request.url.path,
        request.headers,
        body=body,
        api_key_header=settings.api_key_header,
        client_ip=client_ip,
    )


async def require_api_key(
    signed: SignedRequest = Depends(get_signed_request),
) -> None:
    """Reject requests without the configured mobile API key."""
    await SignatureService().verify_api_key(signed)
