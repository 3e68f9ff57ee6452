"""Auth request/response schemas.

Formats (E.164, 6-digit codes, session ids) are checked by ``auth.validators``
so that bad input is a 400 ``VALIDATION_ERROR`` like every other core error.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any] | None = None


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartVerificationRequest(CamelModel):
    phone: str
    email: str | None = None


class SendOtpRequest(CamelModel):
    session_id: str
    medium: str
    channel: str | None = None


class VerifyOtpRequest(CamelModel):
    session_id: str
    medium: str
    otp: str


class CompleteLoginRequest(CamelModel):
    session_id: str


class StartPhoneChangeRequest(CamelModel):
    new_phone: str
    channel: str | None = None


class PhoneChangeSendOtpRequest(CamelModel):
    session_id: str
    target: str
    channel: str | None = None


class VerifyOldPhoneRequest(CamelModel):
    session_id: str
    otp: str
    channel: str | None = None


class VerifyNewPhoneRequest(CamelModel):
    session_id: str
    otp: str
