"""Changing an account's phone number behind two OTP checks.

The current phone is proven first, then the new one. The account is only
touched after both, as a compare-and-set on the old number.
"""

from __future__ import annotations

import logging

from auth.audit import SecurityEventLogger, SecurityEventType, Severity
from auth.config import AuthConfig
from auth.exceptions import AccountConflict, OrderViolation, RateLimited, SessionNotFound, Unauthorized, ValidationError
from auth.interfaces.otp_gateway import OtpGateway
from auth.interfaces.rate_limiter import AbuseDetector, RateLimiter
from auth.interfaces.session_store import PhoneChangeSessionStore
from auth.models import PHONE_CHANGE_FLOW, ChangeEvent, ChangeStatus, ChangeTarget, PhoneChangeSession
from auth.services.identity_service import IdentityService
from auth.services.otp_flow import ANONYMOUS_CLIENT, Check, OtpFlowService
from auth.validators import (
    PHONE_CHANGE_SESSION_PREFIX,
    mask_phone,
    normalize_phone,
    parse_target,
    resolve_phone_channel,
    validate_otp,
    validate_session_id,
)

logger = logging.getLogger(__name__)

_SEND_EVENTS = {ChangeTarget.OLD: ChangeEvent.SEND_OLD_OTP, ChangeTarget.NEW: ChangeEvent.SEND_NEW_OTP}


class PhoneChangeService(OtpFlowService):
    machine = PHONE_CHANGE_FLOW
    abandoned = ChangeStatus.ABANDONED
    finished = frozenset({ChangeStatus.COMMITTING, ChangeStatus.COMPLETED, ChangeStatus.EXPIRED})

    def __init__(
        self,
        store: PhoneChangeSessionStore,
        gateway: OtpGateway,
        identity: IdentityService,
        abuse: AbuseDetector,
        limiter: RateLimiter,
        config: AuthConfig | None = None,
        events: SecurityEventLogger | None = None,
    ) -> None:
        super().__init__(store, gateway, abuse, config, events)
        self._identity = identity
        self._limiter = limiter

    def _step_check(self, account_id: str, target: ChangeTarget, event: ChangeEvent) -> Check:
        def check(session: PhoneChangeSession) -> None:
            # another account's session does not exist as far as this caller knows
            if session.account_id != account_id:
                raise SessionNotFound()
            self._ensure_open(session)
            if target is ChangeTarget.NEW and not session.old_verified:
                raise OrderViolation("Current phone number must be verified first")
            if session.is_verified(target):
                raise OrderViolation(f"The {target.value} phone number is already verified")
            PHONE_CHANGE_FLOW.next(session.status, event)

        return check

    async def _owned(self, account_id: str, session_id: str) -> PhoneChangeSession:
        session_id = validate_session_id(session_id, PHONE_CHANGE_SESSION_PREFIX)
        session = await self._store.get(session_id)
        if session.account_id != account_id:
            raise SessionNotFound()
        return session

    async def _enforce_rate_limit(self, account_id: str) -> None:
        tier = self._config.PHONE_CHANGE_RATE_LIMIT
        key = tier.bucket_key(account_id)
        if not await self._limiter.allow(key, tier.max_requests, tier.window_seconds):
            retry_after = await self._limiter.retry_after(key, tier.window_seconds)
            raise RateLimited(
                "Too many phone change requests, please try again later",
                retry_after=retry_after,
            )

    async def start_change(
        self,
        account_id: str,
        new_phone: str,
        channel: str | None = None,
    ) -> PhoneChangeSession:
        new_phone = normalize_phone(new_phone)
        channel = resolve_phone_channel(channel)
        await self._enforce_rate_limit(account_id)

        account = await self._identity.get_account(account_id)
        if not account:
            raise Unauthorized("Account not found")
        current_phone = account["phone"]
        if current_phone == new_phone:
            raise ValidationError(
                "New phone number must be different from the current one",
                field="newPhone",
            )
        if await self._identity.phone_in_use(new_phone, exclude_account_id=account_id):
            raise AccountConflict("Phone number is already registered by another account")

        method_id = await self._call_gateway(self._gateway.send(current_phone, channel))
        session = await self._store.create(account_id, current_phone, new_phone, method_id)
        logger.info(
            "Phone change %s started for account %s (%s -> %s)",
            session.session_id,
            account_id,
            mask_phone(current_phone),
            mask_phone(new_phone),
        )
        return session

    async def send_otp(
        self,
        account_id: str,
        session_id: str,
        target: ChangeTarget | str,
        channel: str | None = None,
    ) -> str:
        session_id = validate_session_id(session_id, PHONE_CHANGE_SESSION_PREFIX)
        target = parse_target(target)
        channel = resolve_phone_channel(channel)
        await self._owned(account_id, session_id)
        event = _SEND_EVENTS[target]
        return await self._send(
            session_id, target, channel, event, self._step_check(account_id, target, event)
        )

    async def verify_old(
        self,
        account_id: str,
        session_id: str,
        code: str,
        channel: str | None = None,
        client_key: str = ANONYMOUS_CLIENT,
    ) -> PhoneChangeSession:
        """Check the code sent to the current phone, then send one to the new phone.

        If that second send fails the old verification still stands and the
        caller may resend to ``new``.
        """
        session_id = validate_session_id(session_id, PHONE_CHANGE_SESSION_PREFIX)
        code = validate_otp(code)
        channel = resolve_phone_channel(channel)
        await self._owned(account_id, session_id)
        await self._verify(
            session_id,
            ChangeTarget.OLD,
            code,
            client_key,
            ChangeEvent.VERIFY_OLD,
            self._step_check(account_id, ChangeTarget.OLD, ChangeEvent.VERIFY_OLD),
        )
        await self.send_otp(account_id, session_id, ChangeTarget.NEW, channel)
        return await self._store.get(session_id)

    async def verify_new(
        self,
        account_id: str,
        session_id: str,
        code: str,
        client_key: str = ANONYMOUS_CLIENT,
    ) -> dict:
        session_id = validate_session_id(session_id, PHONE_CHANGE_SESSION_PREFIX)
        code = validate_otp(code)
        await self._owned(account_id, session_id)
        # success leaves the session in COMMITTING, which no other request can use
        session = await self._verify(
            session_id,
            ChangeTarget.NEW,
            code,
            client_key,
            ChangeEvent.VERIFY_NEW,
            self._step_check(account_id, ChangeTarget.NEW, ChangeEvent.VERIFY_NEW),
        )
        try:
            account = await self._identity.change_phone(
                account_id, session.current_phone, session.new_phone
            )
            await self._store.update(
                session_id,
                lambda draft: setattr(
                    draft, "status", PHONE_CHANGE_FLOW.next(draft.status, ChangeEvent.COMMIT)
                ),
            )
        finally:
            await self._store.delete(session_id)

        await self._abuse.record_success(client_key)
        self._events.emit(
            SecurityEventType.PHONE_CHANGED,
            Severity.INFO,
            client_key=client_key,
            account_id=account_id,
            old_phone=mask_phone(session.current_phone),
            new_phone=mask_phone(session.new_phone),
        )
        return account

    async def status(self, account_id: str, session_id: str) -> PhoneChangeSession:
        session = await self._owned(account_id, session_id)
        self._ensure_open(session)
        return session
