"""Mobile token endpoints."""

import structlog
from fastapi import APIRouter, Depends, Query

from src.api.dependencies import (
    get_bearer_token,
    get_current_token,
    get_current_user,
    get_signed_request,
)
from src.exceptions import DeviceNotFoundError, InvalidDeviceError
from src.models.token import (
    GenerateTokensRequest,
    LongTermToken,
    MobileToken,
    RefreshTokensRequest,
    RevokeDeviceTokensRequest,
    TokenInfo,
    TokenPair,
    TokenValidation,
)
from src.models.user import User
from src.services.signature_service import SignatureService, SignedRequest
from src.services.token_service import TokenService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tokens", tags=["Tokens"])


async def _verify_for_user(
    signed: SignedRequest, user: User, device_id: str, require_trusted: bool = False
):
    signed.user_id = user.id
    verified = await SignatureService().verify(signed, require_trusted=require_trusted)
    if verified.device_id != device_id:
        raise InvalidDeviceError("signing device differs from requested device")
    return verified


@router.post("/generate")
async def generate_tokens(
    request: GenerateTokensRequest,
    signed: SignedRequest = Depends(get_signed_request),
    current_user: User = Depends(get_current_user),
) -> TokenPair:
    """Issue the initial token pair for a signed device request."""
    verified = await _verify_for_user(signed, current_user, request.device_id)
    return await TokenService().generate_tokens(verified.user_id, verified.device_id)


@router.post("/long-term")
async def issue_long_term_token(
    request: GenerateTokensRequest,
    signed: SignedRequest = Depends(get_signed_request),
    current_user: User = Depends(get_current_user),
) -> LongTermToken:
    """Issue a limited-ability token for background work on the device.

    Only a currently trusted device may hold a long-lived token.

    Raises:
        InvalidDeviceError 403: Device was never trusted or trust was revoked
        TrustExpiredError 401: Device trust has lapsed
    """
    verified = await _verify_for_user(
        signed, current_user, request.device_id, require_trusted=True
    )
    return await TokenService().issue_long_term_token(verified.user_id, verified.device_id)


@router.post("/refresh")
async def refresh_tokens(
    request: RefreshTokensRequest,
    signed: SignedRequest = Depends(get_signed_request),
) -> TokenPair:
    """Rotate a token pair. Authenticated by the request signature alone.

    Raises:
        TokenNotFoundError 401: Unknown, superseded, or wrong-device token
        TokenExpiredError 401: Refresh token has expired
        RefreshTooFrequentError 429: Current pair issued too recently
    """
    token_service = TokenService()

    # The refresh token names the user whose device signed the request
    token = await token_service.get_token(request.refresh_token)
    signed.user_id = token.user_id if token else None
    verified = await SignatureService().verify(signed)
    if verified.device_id != request.device_id:
        raise InvalidDeviceError("signing device differs from refresh device")

    return await token_service.refresh_tokens(
        request.refresh_token,
        request.device_id,
        request.current_access_token,
    )


@router.get("/validate")
async def validate_token(raw_token: str = Depends(get_bearer_token)) -> TokenValidation:
    """Introspect the bearer token. Unknown or expired tokens report valid=false."""
    return await TokenService().validate_token(raw_token)


@router.get("/should-rotate")
async def should_rotate(token: MobileToken = Depends(get_current_token)) -> dict:
    """Whether the bearer token is past the rotation threshold."""
    return {
        "should_rotate": TokenService().should_rotate(token),
        "expires_at": token.expires_at,
    }


@router.get("/info")
async def token_info(
    device_id: str = Query(..., min_length=1, max_length=255),
    token: MobileToken = Depends(get_current_token),
) -> TokenInfo:
    """Registry status for one of the caller's devices."""
    info = await TokenService().get_token_info(token.user_id, device_id)
    if info is None:
        raise DeviceNotFoundError("no token registry entry")
    return info


@router.delete("/device")
async def revoke_device_tokens(
    request: RevokeDeviceTokensRequest,
    token: MobileToken = Depends(get_current_token),
) -> dict:
    """Revoke every token of one of the caller's devices."""
    revoked = await TokenService().revoke_device_tokens(token.user_id, request.device_id)
    return {"message": "Device tokens revoked", "revoked_count": revoked}


@router.delete("/all")
async def revoke_all_tokens(token: MobileToken = Depends(get_current_token)) -> dict:
    """Revoke every token the caller holds, on every device."""
    revoked = await TokenService().revoke_all_user_tokens(token.user_id)
    return {"message": "All tokens revoked", "revoked_count": revoked}
