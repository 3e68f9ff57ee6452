"""Send/verify mechanics shared by the login and phone change flows."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from auth.audit import SecurityEventLogger, SecurityEventType, Severity, security_events
from auth.config import AuthConfig
from auth.exceptions import (
    AttemptsExceeded,
    Blocked,
    GatewayError,
    OrderViolation,
    SessionNotFound,
    VerificationFailed,
)
from auth.interfaces.otp_gateway import OtpGateway
from auth.interfaces.rate_limiter import AbuseDetector
from auth.models import StateMachine

logger = logging.getLogger(__name__)

T = TypeVar("T")
Check = Callable[[Any], None]

ANONYMOUS_CLIENT = "anonymous"


class OtpFlowService:
    """Base for services driving a session through OTP challenges.

    Subclasses set ``machine`` plus the ``abandoned`` and ``finished`` states.
    A "slot" is whatever the record keys its method ids and attempt
    counters by (``Medium`` or ``ChangeTarget``).
    """

    machine: StateMachine
    abandoned: Enum
    finished: frozenset = frozenset()

    def __init__(
        self,
        store,
        gateway: OtpGateway,
        abuse: AbuseDetector,
        config: AuthConfig | None = None,
        events: SecurityEventLogger | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._abuse = abuse
        self._config = config or AuthConfig()
        self._events = events or security_events

    async def _call_gateway(self, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._config.GATEWAY_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            logger.error(
                "OTP provider did not answer within %ss",
                self._config.GATEWAY_TIMEOUT_SECONDS,
            )
            raise GatewayError("OTP provider timed out") from exc

    def _ensure_open(self, record) -> None:
        if record.status is self.abandoned:
            raise AttemptsExceeded()
        # claimed by a completing request
        if record.status in self.finished:
            raise SessionNotFound()

    async def _ensure_not_blocked(self, client_key: str) -> None:
        if await self._abuse.is_blocked(client_key):
            raise Blocked()

    async def _send(self, session_id: str, slot: Enum, channel: str, event: Enum, check: Check) -> str:
        record = await self._store.get(session_id)
        check(record)
        method_id = await self._call_gateway(
            self._gateway.send(record.destination(slot), channel)
        )

        def commit(draft) -> None:
            check(draft)
            draft.set_method_id(slot, method_id)
            if self._config.RESET_ATTEMPTS_ON_RESEND:
                draft.set_attempts(slot, 0)
            draft.status = self.machine.next(draft.status, event)

        await self._store.update(session_id, commit)
        return method_id

    async def _verify(
        self,
        session_id: str,
        slot: Enum,
        code: str,
        client_key: str,
        event: Enum,
        check: Check,
    ):
        """Spend one attempt on ``code`` and return the updated record.

        The attempt is reserved before the provider is asked, so concurrent
        guesses can never exceed the cap. A provider failure hands the
        attempt back; only answered checks count towards abandonment.
        """
        # unknown sessions report as missing even for blocked clients
        await self._store.get(session_id)
        await self._ensure_not_blocked(client_key)
        cap = self._config.MAX_OTP_ATTEMPTS

        def reserve(draft) -> None:
            check(draft)
            if not draft.method_id(slot):
                raise OrderViolation(f"No OTP has been sent for {slot.value}")
            if draft.attempts(slot) >= cap:
                draft.status = self.abandoned
                return
            draft.set_attempts(slot, draft.attempts(slot) + 1)

        reserved = await self._store.update(session_id, reserve)
        if reserved.status is self.abandoned:
            self._emit_abandoned(reserved, slot, client_key)
            raise AttemptsExceeded()

        method_id = reserved.method_id(slot)
        attempts = reserved.attempts(slot)
        remaining = max(0, cap - attempts)

        try:
            accepted = await self._call_gateway(self._gateway.authenticate(method_id, code))
        except GatewayError:
            await self._refund_attempt(session_id, slot, method_id)
            raise
        if not accepted:
            await self._abuse.record_failure(client_key)

        superseded = False

        def apply(draft) -> None:
            nonlocal superseded
            if draft.method_id(slot) != method_id:
                superseded = True
                return
            if draft.status is self.abandoned or draft.is_verified(slot):
                return
            if accepted:
                draft.mark_verified(slot)
                draft.status = self.machine.next(draft.status, event)
            elif draft.attempts(slot) >= cap:
                draft.status = self.abandoned

        updated = await self._store.update(session_id, apply)

        if superseded:
            raise VerificationFailed(
                "OTP was superseded by a newer code",
                attempts_remaining=remaining,
            )
        if not accepted:
            self._events.emit(
                SecurityEventType.VERIFY_FAILED,
                Severity.WARNING,
                client_key=client_key,
                session_id=session_id,
                slot=slot.value,
                attempts=attempts,
            )
            if updated.status is self.abandoned:
                self._emit_abandoned(updated, slot, client_key)
            raise VerificationFailed(attempts_remaining=remaining)
        if not updated.is_verified(slot):
            raise AttemptsExceeded()
        return updated

    async def _refund_attempt(self, session_id: str, slot: Enum, method_id: str) -> None:
        def refund(draft) -> None:
            if draft.method_id(slot) != method_id or draft.status is self.abandoned:
                return
            if draft.attempts(slot) > 0:
                draft.set_attempts(slot, draft.attempts(slot) - 1)

        try:
            await self._store.update(session_id, refund)
        except SessionNotFound:
            logger.debug("Session %s ended before its attempt could be refunded", session_id)

    def _emit_abandoned(self, record, slot: Enum, client_key: str) -> None:
        self._events.emit(
            SecurityEventType.SESSION_ABANDONED,
            Severity.HIGH,
            client_key=client_key,
            session_id=record.session_id,
            slot=slot.value,
        )
