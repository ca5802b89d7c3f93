import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from trustgate.database import get_db
from trustgate.dependencies import get_device_trust_service
from trustgate.middlewares.rbac import get_current_user_id
from trustgate.schemas.device import (
    DeviceRegistrationRequest,
    DeviceRegistrationResult,
    DeviceRevocationRequest,
    DeviceRevocationResult,
    DeviceTrustStatus,
    TrustedDeviceRecord,
)
from trustgate.services.audit_log_service import log_device_event
from trustgate.services.device_trust import NOT_TRUSTED_ERROR
from trustgate.services.rate_limit import DEVICE_LIMIT, READ_LIMIT, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])


@router.post("/register", response_model=DeviceRegistrationResult)
@limiter.limit(DEVICE_LIMIT)
async def register_device(
    payload: DeviceRegistrationRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_device_trust_service),
    db=Depends(get_db),
):
    # ValidationError propagates to the 400 handler
    result = await service.register_device(user_id, payload.fingerprint, payload.context)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to register device", "device_id": result.device_id},
        )
    if db is not None:
        await log_device_event(
            db, user_id, result.device_id, "registered",
            f"Trust {result.trust_score} ({result.trust_level.value if result.trust_level else 'unknown'})",
        )
    return result


@router.get("/trusted", response_model=List[TrustedDeviceRecord])
@limiter.limit(READ_LIMIT)
async def trusted_devices(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_device_trust_service),
):
    return await service.get_trusted_devices(user_id)


@router.get("/{device_id}/trust", response_model=DeviceTrustStatus)
@limiter.limit(READ_LIMIT)
async def device_trust_status(
    device_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_device_trust_service),
):
    return await service.get_device_trust_status(user_id, device_id)


@router.delete("/{device_id}/trust", response_model=DeviceRevocationResult)
@limiter.limit(DEVICE_LIMIT)
async def revoke_device_trust(
    device_id: str,
    request: Request,
    payload: Optional[DeviceRevocationRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_device_trust_service),
    db=Depends(get_db),
):
    reason = payload.reason if payload else "user_revoked"
    result = await service.revoke_device_trust(user_id, device_id, reason)
    if not result.success:
        if result.error == NOT_TRUSTED_ERROR:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"message": result.error})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to revoke device trust"},
        )
    if db is not None:
        await log_device_event(db, user_id, device_id, "trust_revoked", f"Reason: {reason}")
    return result
