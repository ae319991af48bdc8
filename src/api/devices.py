"""Device registration and trust endpoints."""

import structlog
from fastapi import APIRouter, Depends, Header, status

from src.api.dependencies import get_current_user, get_signed_request, require_api_key
from src.config import get_settings
from src.exceptions import DeviceNotFoundError
from src.models.device import (
    DeviceListResponse,
    DeviceSummary,
    RegisterDeviceRequest,
    RegisterDeviceResponse,
    TrustDeviceRequest,
    TrustDeviceResponse,
)
from src.models.user import User
from src.services.device_service import DeviceService
from src.services.signature_service import SignatureService, SignedRequest, VerifiedRequest
from src.services.trust_service import TrustService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/devices", tags=["Devices"])


async def _verify_signed(signed: SignedRequest, user: User) -> VerifiedRequest:
    # Any of the user's registered devices may sign for the request
    signed.user_id = user.id
    return await SignatureService().verify(signed)


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def register_device(
    request: RegisterDeviceRequest,
    current_user: User = Depends(get_current_user),
) -> RegisterDeviceResponse:
    """Register a device for the current user.

    The device secret is in this response and is never returned again.

    Raises:
        DuplicateDeviceError 409: If the device is already registered
        DeviceLimitExceededError 409: If the user has too many devices
    """
    result = await DeviceService().register(
        current_user.id,
        request.device_id,
        request.device_info.model_dump(exclude_none=True),
    )
    return RegisterDeviceResponse(
        device=DeviceSummary.from_device(result.device),
        device_secret=result.device_secret,
        trust_status=result.trust_status,
    )


@router.get("")
async def list_devices(
    current_user: User = Depends(get_current_user),
) -> DeviceListResponse:
    """List the current user's devices, most recently used first."""
    devices = await DeviceService().list_devices(current_user.id)
    return DeviceListResponse(
        devices=[DeviceSummary.from_device(d) for d in devices],
        total=len(devices),
        max_devices=get_settings().max_devices_per_user,
    )


@router.get("/security-status")
async def security_status(
    x_device_id: str = Header(..., alias="X-Device-Id"),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Security score and recommendations for the calling device."""
    device_service = DeviceService()
    device = await device_service.get_device(current_user.id, x_device_id)
    if device is None:
        raise DeviceNotFoundError("security status for unknown device")
    return device_service.security_status(device)


@router.post("/{device_id}/trust")
async def trust_device(
    device_id: str,
    request: TrustDeviceRequest,
    signed: SignedRequest = Depends(get_signed_request),
    current_user: User = Depends(get_current_user),
) -> TrustDeviceResponse:
    """Trust a device after secondary verification.

    The request must be signed by one of the user's devices. Biometric
    verification is only accepted when the device signs for itself.

    Raises:
        SecurityValidationError 401/403: Request signature did not verify
        DeviceNotFoundError 404: Unknown device
        AlreadyTrustedError 409: Trust still valid
        VerificationFailedError 401: Verification did not pass
    """
    verified = await _verify_signed(signed, current_user)
    device = await TrustService().trust_device(
        current_user.id,
        device_id,
        request.verification_method,
        request.verification_data,
        request.trust_duration,
        signing_device_id=verified.device_id,
    )
    return TrustDeviceResponse(device=DeviceSummary.from_device(device))


@router.delete("/{device_id}/trust")
async def revoke_trust(
    device_id: str,
    signed: SignedRequest = Depends(get_signed_request),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Revoke trust for a device. Succeeds for an already untrusted device.

    Signed by any of the user's devices, so a lost phone can be revoked from
    another one.
    """
    await _verify_signed(signed, current_user)
    await TrustService().revoke_trust(current_user.id, device_id)
    return {"message": "Device trust revoked"}


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_device(
    device_id: str,
    signed: SignedRequest = Depends(get_signed_request),
    current_user: User = Depends(get_current_user),
) -> None:
    """Remove a device together with its tokens. Signed by any of the user's devices."""
    await _verify_signed(signed, current_user)
    removed = await DeviceService().remove_device(current_user.id, device_id)
    if not removed:
        raise DeviceNotFoundError("remove unknown device")
