"""Sequential phone-then-email verification leading to a login credential."""

from __future__ import annotations

import logging
from typing import Any

from auth.audit import SecurityEventLogger, SecurityEventType, Severity
from auth.config import AuthConfig
from auth.exceptions import OrderViolation, ValidationError
from auth.interfaces.otp_gateway import OtpGateway
from auth.interfaces.rate_limiter import AbuseDetector
from auth.interfaces.session_store import VerificationSessionStore
from auth.models import LOGIN_FLOW, LoginEvent, Medium, SessionStatus, VerificationSession
from auth.services.identity_service import IdentityService
from auth.services.otp_flow import ANONYMOUS_CLIENT, Check, OtpFlowService
from auth.validators import (
    LOGIN_SESSION_PREFIX,
    mask_phone,
    normalize_email,
    normalize_phone,
    parse_medium,
    resolve_channel,
    validate_otp,
    validate_session_id,
)

logger = logging.getLogger(__name__)

_SEND_EVENTS = {Medium.PHONE: LoginEvent.SEND_PHONE_OTP, Medium.EMAIL: LoginEvent.SEND_EMAIL_OTP}
_VERIFY_EVENTS = {Medium.PHONE: LoginEvent.VERIFY_PHONE, Medium.EMAIL: LoginEvent.VERIFY_EMAIL}


class VerificationService(OtpFlowService):
    """Drives a ``VerificationSession`` from start to an issued credential.

    Phone must be verified before an email OTP can even be sent. Sessions
    created without an email complete right after the phone step.
    """

    machine = LOGIN_FLOW
    abandoned = SessionStatus.ABANDONED
    finished = frozenset({SessionStatus.COMPLETED, SessionStatus.EXPIRED})

    def __init__(
        self,
        store: VerificationSessionStore,
        gateway: OtpGateway,
        identity: IdentityService,
        abuse: AbuseDetector,
        config: AuthConfig | None = None,
        events: SecurityEventLogger | None = None,
    ) -> None:
        super().__init__(store, gateway, abuse, config, events)
        self._identity = identity

    def _step_check(self, medium: Medium, event: LoginEvent) -> Check:
        def check(session: VerificationSession) -> None:
            self._ensure_open(session)
            if medium is Medium.EMAIL:
                if not session.requires_email:
                    raise ValidationError("Session has no email address", field="medium")
                if not session.phone_verified:
                    raise OrderViolation("Phone verification required before email step")
            if session.is_verified(medium):
                raise OrderViolation(f"{medium.value.capitalize()} is already verified")
            LOGIN_FLOW.next(session.status, event)

        return check

    async def start(
        self,
        phone: str,
        email: str | None = None,
        client_key: str = ANONYMOUS_CLIENT,
    ) -> VerificationSession:
        phone = normalize_phone(phone)
        email = normalize_email(email) if email is not None else None
        session = await self._store.create(phone, email)
        self._events.emit(
            SecurityEventType.VERIFY_STARTED,
            client_key=client_key,
            session_id=session.session_id,
            phone=mask_phone(phone),
            with_email=email is not None,
        )
        return session

    async def send_otp(
        self,
        session_id: str,
        medium: Medium | str,
        channel: str | None = None,
    ) -> str:
        session_id = validate_session_id(session_id, LOGIN_SESSION_PREFIX)
        medium = parse_medium(medium)
        channel = resolve_channel(medium, channel)
        event = _SEND_EVENTS[medium]
        method_id = await self._send(session_id, medium, channel, event, self._step_check(medium, event))
        logger.info("Sent %s OTP for session %s via %s", medium.value, session_id, channel)
        return method_id

    async def verify_otp(
        self,
        session_id: str,
        medium: Medium | str,
        code: str,
        client_key: str = ANONYMOUS_CLIENT,
    ) -> VerificationSession:
        session_id = validate_session_id(session_id, LOGIN_SESSION_PREFIX)
        medium = parse_medium(medium)
        code = validate_otp(code)
        event = _VERIFY_EVENTS[medium]
        session = await self._verify(
            session_id, medium, code, client_key, event, self._step_check(medium, event)
        )
        logger.info("Verified %s for session %s", medium.value, session_id)
        return session

    async def complete_login(
        self,
        session_id: str,
        client_key: str = ANONYMOUS_CLIENT,
    ) -> dict[str, Any]:
        session_id = validate_session_id(session_id, LOGIN_SESSION_PREFIX)
        previous: dict[str, SessionStatus] = {}

        def claim(session: VerificationSession) -> None:
            self._ensure_open(session)
            if not session.all_verified:
                raise OrderViolation(
                    "Both phone and email must be verified"
                    if session.requires_email
                    else "Phone must be verified"
                )
            previous["status"] = session.status
            session.status = LOGIN_FLOW.next(session.status, LoginEvent.COMPLETE)

        session = await self._store.update(session_id, claim)
        try:
            account_id = await self._identity.find_or_create_account(session.phone, session.email)
            credential = await self._identity.issue_credential(account_id)
        except Exception:
            # release the claim so the caller can retry
            await self._store.update(
                session_id, lambda draft: setattr(draft, "status", previous["status"])
            )
            raise

        await self._store.delete(session_id)
        await self._abuse.record_success(client_key)
        self._events.emit(
            SecurityEventType.VERIFY_COMPLETED,
            client_key=client_key,
            session_id=session_id,
        )
        self._events.emit(
            SecurityEventType.AUTH_SUCCESS,
            Severity.INFO,
            client_key=client_key,
            account_id=account_id,
        )
        return {
            "account_id": account_id,
            "token": credential["token"],
            "expires_at": credential["expires_at"],
        }

    async def status(self, session_id: str) -> VerificationSession:
        """Read-only view; never extends the session."""
        session_id = validate_session_id(session_id, LOGIN_SESSION_PREFIX)
        session = await self._store.get(session_id)
        self._ensure_open(session)
        return session
