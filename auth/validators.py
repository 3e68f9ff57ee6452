"""Input format checks run before any session lookup or gateway call."""

from __future__ import annotations

import re

from email_validator import EmailNotValidError, validate_email

from auth.exceptions import ValidationError
from auth.models import ChangeTarget, Medium

LOGIN_SESSION_PREFIX = "seq_auth_"
PHONE_CHANGE_SESSION_PREFIX = "phone_change_"

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")
_OTP = re.compile(r"^\d{6}$")

PHONE_CHANNELS = frozenset({"sms", "whatsapp"})
DEFAULT_PHONE_CHANNEL = "sms"
EMAIL_CHANNEL = "email"


def normalize_phone(value: str | None) -> str:
    """Return an E.164 number; a leading space or ``%2B`` (URL-mangled ``+``) becomes ``+``."""
    if not value or not isinstance(value, str):
        raise ValidationError("Phone number is required", field="phone")
    candidate = value
    if candidate.startswith("%2B"):
        candidate = "+" + candidate[3:]
    elif candidate.startswith(" "):
        candidate = "+" + candidate[1:]
    if not _E164.match(candidate):
        raise ValidationError("Invalid phone number format", field="phone")
    return candidate


def normalize_email(value: str | None) -> str:
    if not value or not isinstance(value, str):
        raise ValidationError("Email is required", field="email")
    try:
        result = validate_email(value, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Invalid email address", field="email") from exc
    return result.normalized.lower()


def validate_otp(code: str | None) -> str:
    if not code or not isinstance(code, str) or not _OTP.match(code):
        raise ValidationError("OTP must be 6 digits", field="otp")
    return code


def parse_medium(value: str | Medium | None) -> Medium:
    try:
        return Medium(value)
    except ValueError:
        raise ValidationError("Medium must be 'phone' or 'email'", field="medium") from None


def parse_target(value: str | ChangeTarget | None) -> ChangeTarget:
    try:
        return ChangeTarget(value)
    except ValueError:
        raise ValidationError("Target must be 'old' or 'new'", field="target") from None


def resolve_channel(medium: Medium, channel: str | None) -> str:
    if medium is Medium.EMAIL:
        if channel not in (None, "", EMAIL_CHANNEL):
            raise ValidationError("Email OTPs are only delivered by email", field="channel")
        return EMAIL_CHANNEL
    return resolve_phone_channel(channel)


def resolve_phone_channel(channel: str | None) -> str:
    if not channel:
        return DEFAULT_PHONE_CHANNEL
    if channel not in PHONE_CHANNELS:
        raise ValidationError("Channel must be 'sms' or 'whatsapp'", field="channel")
    return channel


def _session_id_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}{_UUID}$", re.IGNORECASE)


_SESSION_ID_PATTERNS = {
    LOGIN_SESSION_PREFIX: _session_id_pattern(LOGIN_SESSION_PREFIX),
    PHONE_CHANGE_SESSION_PREFIX: _session_id_pattern(PHONE_CHANGE_SESSION_PREFIX),
}


def validate_session_id(session_id: str | None, prefix: str) -> str:
    pattern = _SESSION_ID_PATTERNS.get(prefix) or _session_id_pattern(prefix)
    if not session_id or not isinstance(session_id, str) or not pattern.match(session_id):
        raise ValidationError("Invalid session ID", field="sessionId")
    return session_id


def mask_phone(phone: str) -> str:
    """``+12025550123`` -> ``+1202*****23`` for logs."""
    if len(phone) <= 6:
        return "*" * len(phone)
    return phone[:5] + "*" * (len(phone) - 7) + phone[-2:]
