"""Phone number change routes for signed-in accounts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from auth.dependencies import (
    enforce_rate_limit,
    get_client_key,
    get_current_account,
    get_phone_change_service,
)
from auth.schemas import (
    ApiResponse,
    PhoneChangeSendOtpRequest,
    StartPhoneChangeRequest,
    VerifyNewPhoneRequest,
    VerifyOldPhoneRequest,
)
from auth.models import ChangeStatus
from auth.services.phone_change_service import PhoneChangeService

router = APIRouter(dependencies=[Depends(enforce_rate_limit("general"))])


@router.post("/start", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def start_phone_change(
    payload: StartPhoneChangeRequest,
    account: dict = Depends(get_current_account),
    service: PhoneChangeService = Depends(get_phone_change_service),
) -> ApiResponse:
    session = await service.start_change(account["id"], payload.new_phone, payload.channel)
    return ApiResponse(
        success=True,
        message="OTP sent to your current phone number",
        data={"sessionId": session.session_id, "expiresAt": int(session.expires_at)},
    )


@router.post(
    "/send-otp",
    response_model=ApiResponse,
    dependencies=[Depends(enforce_rate_limit("otp_send"))],
)
async def send_phone_change_otp(
    payload: PhoneChangeSendOtpRequest,
    account: dict = Depends(get_current_account),
    service: PhoneChangeService = Depends(get_phone_change_service),
) -> ApiResponse:
    method_id = await service.send_otp(
        account["id"], payload.session_id, payload.target, payload.channel
    )
    return ApiResponse(success=True, message="OTP sent", data={"methodId": method_id})


@router.post("/verify-old", response_model=ApiResponse)
async def verify_old_phone(
    payload: VerifyOldPhoneRequest,
    account: dict = Depends(get_current_account),
    client_key: str = Depends(get_client_key),
    service: PhoneChangeService = Depends(get_phone_change_service),
) -> ApiResponse:
    session = await service.verify_old(
        account["id"], payload.session_id, payload.otp, payload.channel, client_key=client_key
    )
    return ApiResponse(
        success=True,
        message="Current phone number verified, OTP sent to the new number",
        data={
            "oldVerified": session.old_verified,
            "newOtpSent": session.status is ChangeStatus.NEW_OTP_SENT,
        },
    )


@router.post("/verify-new", response_model=ApiResponse)
async def verify_new_phone(
    payload: VerifyNewPhoneRequest,
    account: dict = Depends(get_current_account),
    client_key: str = Depends(get_client_key),
    service: PhoneChangeService = Depends(get_phone_change_service),
) -> ApiResponse:
    updated = await service.verify_new(
        account["id"], payload.session_id, payload.otp, client_key=client_key
    )
    return ApiResponse(
        success=True,
        message="Phone number updated",
        data={"accountId": updated["id"], "phone": updated["phone"]},
    )


@router.get("/status/{session_id}", response_model=ApiResponse)
async def phone_change_status(
    session_id: str,
    account: dict = Depends(get_current_account),
    service: PhoneChangeService = Depends(get_phone_change_service),
) -> ApiResponse:
    session = await service.status(account["id"], session_id)
    return ApiResponse(
        success=True,
        message="Phone change status retrieved",
        data={
            "oldVerified": session.old_verified,
            "newVerified": session.new_verified,
            "status": session.status.value,
            "expiresAt": int(session.expires_at),
        },
    )
