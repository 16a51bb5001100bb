from fastapi import APIRouter, Depends, HTTPException, Query, status

from otp_service.config import settings
from otp_service.schemas.otp import (
    MessageResponse,
    OtpCleanupRequest,
    OtpPurpose,
    OtpRequest,
    OtpResponse,
    OtpStatusResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
)
from otp_service.services.otp import OtpFailure, OtpService, otp_service

router = APIRouter(prefix="/auth", tags=["auth"])

_FAILURE_STATUS = {
    OtpFailure.STORAGE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    OtpFailure.DELIVERY_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def get_otp_service() -> OtpService:
    return otp_service


@router.post("/otp/request", response_model=OtpResponse, response_model_exclude_none=True)
def request_otp(
    payload: OtpRequest, service: OtpService = Depends(get_otp_service)
) -> OtpResponse:
    gate = service.can_issue(payload.email, payload.purpose)
    if not gate.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Please wait {gate.wait_seconds} seconds before requesting a new code.",
            headers={"Retry-After": str(gate.wait_seconds)},
        )
    result = service.issue(payload.email, payload.purpose)
    if not result.accepted:
        raise HTTPException(
            status_code=_FAILURE_STATUS.get(
                result.reason, status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            detail=result.message,
        )
    return OtpResponse(
        message=result.message,
        expires_in_seconds=settings.otp_ttl_seconds,
        otp=result.code if settings.otp_debug else None,
    )


@router.post("/otp/verify", response_model=OtpVerifyResponse)
def verify_otp(
    payload: OtpVerifyRequest, service: OtpService = Depends(get_otp_service)
) -> OtpVerifyResponse:
    result = service.verify(payload.email, payload.code, payload.purpose)
    if not result.success:
        raise HTTPException(
            status_code=_FAILURE_STATUS.get(
                result.reason, status.HTTP_400_BAD_REQUEST
            ),
            detail=result.message,
        )
    return OtpVerifyResponse(message=result.message, verified=True)


@router.get("/otp/status", response_model=OtpStatusResponse)
def otp_status(
    email: str = Query(min_length=3, max_length=255),
    purpose: OtpPurpose = "password_reset",
    service: OtpService = Depends(get_otp_service),
) -> OtpStatusResponse:
    try:
        gate = service.can_issue(email, purpose)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return OtpStatusResponse(allowed=gate.allowed, wait_seconds=gate.wait_seconds)


@router.post("/otp/cleanup", response_model=MessageResponse)
def cleanup_otps(
    payload: OtpCleanupRequest, service: OtpService = Depends(get_otp_service)
) -> MessageResponse:
    service.cleanup(payload.email)
    return MessageResponse(message="Stale codes removed")
