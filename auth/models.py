"""
Verification records and the flow state machines.

Two flows share one mechanism: a transition table keyed by
``(state, event)``. Anything missing from the table is an ``OrderViolation``.

Login flow (phone-only sessions may complete from PHONE_VERIFIED):

    STARTED -> PHONE_OTP_SENT -> PHONE_VERIFIED -> EMAIL_OTP_SENT
            -> EMAIL_VERIFIED -> COMPLETED

Phone change flow:

    OLD_OTP_SENT -> OLD_VERIFIED -> NEW_OTP_SENT -> COMMITTING -> COMPLETED

Both end in ABANDONED once an attempt cap is hit. EXPIRED is never stored;
an expired record is simply gone.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from auth.exceptions import OrderViolation


class Medium(str, Enum):
    PHONE = "phone"
    EMAIL = "email"


class SessionStatus(str, Enum):
    STARTED = "started"
    PHONE_OTP_SENT = "phone_otp_sent"
    PHONE_VERIFIED = "phone_verified"
    EMAIL_OTP_SENT = "email_otp_sent"
    EMAIL_VERIFIED = "email_verified"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class LoginEvent(str, Enum):
    SEND_PHONE_OTP = "send phone OTP"
    VERIFY_PHONE = "verify phone"
    SEND_EMAIL_OTP = "send email OTP"
    VERIFY_EMAIL = "verify email"
    COMPLETE = "complete login"


class ChangeTarget(str, Enum):
    OLD = "old"
    NEW = "new"


class ChangeStatus(str, Enum):
    OLD_OTP_SENT = "old_otp_sent"
    OLD_VERIFIED = "old_verified"
    NEW_OTP_SENT = "new_otp_sent"
    COMMITTING = "committing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class ChangeEvent(str, Enum):
    SEND_OLD_OTP = "send OTP to current phone"
    VERIFY_OLD = "verify current phone"
    SEND_NEW_OTP = "send OTP to new phone"
    VERIFY_NEW = "verify new phone"
    COMMIT = "commit phone change"


S = TypeVar("S", bound=Enum)
E = TypeVar("E", bound=Enum)


class StateMachine(Generic[S, E]):
    def __init__(self, name: str, transitions: dict[tuple[S, E], S]) -> None:
        self.name = name
        self._transitions = dict(transitions)

    def can(self, state: S, event: E) -> bool:
        return (state, event) in self._transitions

    def next(self, state: S, event: E) -> S:
        try:
            return self._transitions[(state, event)]
        except KeyError:
            raise OrderViolation(
                f"Cannot {event.value} while {self.name} is {state.value}"
            ) from None


LOGIN_FLOW: StateMachine[SessionStatus, LoginEvent] = StateMachine(
    "verification session",
    {
        (SessionStatus.STARTED, LoginEvent.SEND_PHONE_OTP): SessionStatus.PHONE_OTP_SENT,
        (SessionStatus.PHONE_OTP_SENT, LoginEvent.SEND_PHONE_OTP): SessionStatus.PHONE_OTP_SENT,
        (SessionStatus.PHONE_OTP_SENT, LoginEvent.VERIFY_PHONE): SessionStatus.PHONE_VERIFIED,
        (SessionStatus.PHONE_VERIFIED, LoginEvent.SEND_EMAIL_OTP): SessionStatus.EMAIL_OTP_SENT,
        (SessionStatus.PHONE_VERIFIED, LoginEvent.COMPLETE): SessionStatus.COMPLETED,
        (SessionStatus.EMAIL_OTP_SENT, LoginEvent.SEND_EMAIL_OTP): SessionStatus.EMAIL_OTP_SENT,
        (SessionStatus.EMAIL_OTP_SENT, LoginEvent.VERIFY_EMAIL): SessionStatus.EMAIL_VERIFIED,
        (SessionStatus.EMAIL_VERIFIED, LoginEvent.COMPLETE): SessionStatus.COMPLETED,
    },
)

PHONE_CHANGE_FLOW: StateMachine[ChangeStatus, ChangeEvent] = StateMachine(
    "phone change session",
    {
        (ChangeStatus.OLD_OTP_SENT, ChangeEvent.SEND_OLD_OTP): ChangeStatus.OLD_OTP_SENT,
        (ChangeStatus.OLD_OTP_SENT, ChangeEvent.VERIFY_OLD): ChangeStatus.OLD_VERIFIED,
        (ChangeStatus.OLD_VERIFIED, ChangeEvent.SEND_NEW_OTP): ChangeStatus.NEW_OTP_SENT,
        (ChangeStatus.NEW_OTP_SENT, ChangeEvent.SEND_NEW_OTP): ChangeStatus.NEW_OTP_SENT,
        (ChangeStatus.NEW_OTP_SENT, ChangeEvent.VERIFY_NEW): ChangeStatus.COMMITTING,
        (ChangeStatus.COMMITTING, ChangeEvent.COMMIT): ChangeStatus.COMPLETED,
    },
)


class _Record:
    """Shared helpers for the TTL-bound session records."""

    session_id: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def copy(self):
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {key: (value.value if isinstance(value, Enum) else value)
                for key, value in dataclasses.asdict(self).items()}


@dataclass
class VerificationSession(_Record):
    session_id: str
    phone: str
    email: str | None
    created_at: float
    expires_at: float
    status: SessionStatus = SessionStatus.STARTED
    phone_verified: bool = False
    email_verified: bool = False
    phone_method_id: str | None = None
    email_method_id: str | None = None
    attempts_phone: int = 0
    attempts_email: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationSession":
        payload = dict(data)
        payload["status"] = SessionStatus(payload["status"])
        return cls(**payload)

    @property
    def requires_email(self) -> bool:
        return self.email is not None

    @property
    def all_verified(self) -> bool:
        return self.phone_verified and (self.email_verified or not self.requires_email)

    def destination(self, medium: Medium) -> str | None:
        return self.phone if medium is Medium.PHONE else self.email

    def method_id(self, medium: Medium) -> str | None:
        return self.phone_method_id if medium is Medium.PHONE else self.email_method_id

    def attempts(self, medium: Medium) -> int:
        return self.attempts_phone if medium is Medium.PHONE else self.attempts_email

    def is_verified(self, medium: Medium) -> bool:
        return self.phone_verified if medium is Medium.PHONE else self.email_verified

    def set_method_id(self, medium: Medium, method_id: str) -> None:
        if medium is Medium.PHONE:
            self.phone_method_id = method_id
        else:
            self.email_method_id = method_id

    def set_attempts(self, medium: Medium, attempts: int) -> None:
        if medium is Medium.PHONE:
            self.attempts_phone = attempts
        else:
            self.attempts_email = attempts

    def mark_verified(self, medium: Medium) -> None:
        if medium is Medium.PHONE:
            self.phone_verified = True
        else:
            if not self.phone_verified:
                raise OrderViolation("Phone verification required before email step")
            self.email_verified = True


@dataclass
class PhoneChangeSession(_Record):
    session_id: str
    account_id: str
    current_phone: str
    new_phone: str
    created_at: float
    expires_at: float
    status: ChangeStatus = ChangeStatus.OLD_OTP_SENT
    old_verified: bool = False
    new_verified: bool = False
    old_method_id: str | None = None
    new_method_id: str | None = None
    attempts_old: int = 0
    attempts_new: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhoneChangeSession":
        payload = dict(data)
        payload["status"] = ChangeStatus(payload["status"])
        return cls(**payload)

    def destination(self, target: ChangeTarget) -> str:
        return self.current_phone if target is ChangeTarget.OLD else self.new_phone

    def method_id(self, target: ChangeTarget) -> str | None:
        return self.old_method_id if target is ChangeTarget.OLD else self.new_method_id

    def attempts(self, target: ChangeTarget) -> int:
        return self.attempts_old if target is ChangeTarget.OLD else self.attempts_new

    def set_method_id(self, target: ChangeTarget, method_id: str) -> None:
        if target is ChangeTarget.OLD:
            self.old_method_id = method_id
        else:
            self.new_method_id = method_id

    def set_attempts(self, target: ChangeTarget, attempts: int) -> None:
        if target is ChangeTarget.OLD:
            self.attempts_old = attempts
        else:
            self.attempts_new = attempts

    def is_verified(self, target: ChangeTarget) -> bool:
        return self.old_verified if target is ChangeTarget.OLD else self.new_verified

    def mark_verified(self, target: ChangeTarget) -> None:
        if target is ChangeTarget.OLD:
            self.old_verified = True
        else:
            if not self.old_verified:
                raise OrderViolation("Current phone number must be verified first")
            self.new_verified = True


@dataclass
class AbuseRecord:
    client_key: str
    window_start: float
    failure_count: int = 0

    def is_expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds


@dataclass
class RateLimitBucket:
    key: str
    window_start: float
    window_seconds: float
    limit: int
    count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    def reset_in(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_seconds - now)
