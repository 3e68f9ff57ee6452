"""Sequential phone + email verification routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from auth.dependencies import enforce_rate_limit, get_client_key, get_verification_service
from auth.schemas import (
    ApiResponse,
    CompleteLoginRequest,
    SendOtpRequest,
    StartVerificationRequest,
    VerifyOtpRequest,
)
from auth.services.verification_service import VerificationService

router = APIRouter(dependencies=[Depends(enforce_rate_limit("general"))])


@router.post(
    "/start",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_rate_limit("login"))],
)
async def start_verification(
    payload: StartVerificationRequest,
    client_key: str = Depends(get_client_key),
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse:
    session = await service.start(payload.phone, payload.email, client_key=client_key)
    return ApiResponse(
        success=True,
        message="Verification session started",
        data={"sessionId": session.session_id, "expiresAt": int(session.expires_at)},
    )


@router.post(
    "/send-otp",
    response_model=ApiResponse,
    dependencies=[Depends(enforce_rate_limit("otp_send"))],
)
async def send_otp(
    payload: SendOtpRequest,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse:
    method_id = await service.send_otp(payload.session_id, payload.medium, payload.channel)
    return ApiResponse(
        success=True,
        message=f"OTP sent to your {payload.medium}",
        data={"methodId": method_id},
    )


@router.post("/verify-otp", response_model=ApiResponse)
async def verify_otp(
    payload: VerifyOtpRequest,
    client_key: str = Depends(get_client_key),
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse:
    session = await service.verify_otp(
        payload.session_id, payload.medium, payload.otp, client_key=client_key
    )
    return ApiResponse(
        success=True,
        message=f"{payload.medium.capitalize()} verified",
        data={
            "verified": True,
            "phoneVerified": session.phone_verified,
            "emailVerified": session.email_verified,
        },
    )


@router.post(
    "/complete-login",
    response_model=ApiResponse,
    dependencies=[Depends(enforce_rate_limit("login"))],
)
async def complete_login(
    payload: CompleteLoginRequest,
    client_key: str = Depends(get_client_key),
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse:
    result = await service.complete_login(payload.session_id, client_key=client_key)
    return ApiResponse(
        success=True,
        message="Login successful",
        data={
            "accountId": result["account_id"],
            "token": result["token"],
            "tokenExpiry": result["expires_at"],
        },
    )


@router.get("/status/{session_id}", response_model=ApiResponse)
async def verification_status(
    session_id: str,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse:
    session = await service.status(session_id)
    return ApiResponse(
        success=True,
        message="Verification status retrieved",
        data={
            "phoneVerified": session.phone_verified,
            "emailVerified": session.email_verified,
            "bothVerified": session.all_verified,
            "status": session.status.value,
            "expiresAt": int(session.expires_at),
        },
    )
