import asyncio
import unittest
from uuid import uuid4

from auth.audit import SecurityEventType
from auth.exceptions import (
    AccountConflict,
    AttemptsExceeded,
    Blocked,
    GatewayError,
    OrderViolation,
    SessionNotFound,
    ValidationError,
    VerificationFailed,
)
from auth.models import SessionStatus
from auth.security import decode_token
from auth.services.identity_service import IdentityService
from auth.services.otp_gateway import MemoryOtpGateway
from auth.services.verification_service import VerificationService
from auth.stores.memory_store import (
    MemoryAbuseDetector,
    MemoryAccountStore,
    MemoryVerificationSessionStore,
)
from auth.validators import LOGIN_SESSION_PREFIX
from tests.support import FakeClock, RecordingEvents, make_config

PHONE = "+12025550123"
EMAIL = "a@b.com"
CODE = "123456"
WRONG = "000000"


class ScriptedGateway(MemoryOtpGateway):
    """Memory gateway that can run a hook or stall inside ``authenticate``."""

    def __init__(self):
        super().__init__(fixed_code=CODE)
        self.on_authenticate = None
        self.delay = 0.0

    async def authenticate(self, method_id, code):
        if self.on_authenticate is not None:
            hook, self.on_authenticate = self.on_authenticate, None
            await hook()
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().authenticate(method_id, code)


class VerificationServiceTestCase(unittest.IsolatedAsyncioTestCase):
    abuse_threshold = 5
    config_overrides: dict = {}

    def setUp(self):
        self.clock = FakeClock()
        self.events = RecordingEvents()
        self.config = make_config(**self.config_overrides)
        self.store = MemoryVerificationSessionStore(self.config.session_ttl_seconds, clock=self.clock)
        self.gateway = ScriptedGateway()
        self.accounts = MemoryAccountStore()
        self.identity = IdentityService(self.accounts, self.config)
        self.abuse = MemoryAbuseDetector(
            self.abuse_threshold, self.config.abuse_window_seconds, events=self.events, clock=self.clock
        )
        self.service = VerificationService(
            self.store, self.gateway, self.identity, self.abuse, self.config, self.events
        )

    async def _phone_verified_session(self, email=EMAIL):
        session = await self.service.start(PHONE, email)
        await self.service.send_otp(session.session_id, "phone")
        await self.service.verify_otp(session.session_id, "phone", CODE)
        return session.session_id

    async def _fully_verified_session(self):
        session_id = await self._phone_verified_session()
        await self.service.send_otp(session_id, "email")
        await self.service.verify_otp(session_id, "email", CODE)
        return session_id


class TestLoginFlow(VerificationServiceTestCase):
    async def test_full_flow_issues_credential_and_consumes_session(self):
        session = await self.service.start(" 12025550123", "A@b.com")
        self.assertEqual(session.phone, PHONE)
        self.assertEqual(session.email, EMAIL)

        method_id = await self.service.send_otp(session.session_id, "phone")
        self.assertEqual(self.gateway.issued[method_id].channel, "sms")
        verified = await self.service.verify_otp(session.session_id, "phone", CODE)
        self.assertTrue(verified.phone_verified)
        self.assertIs(verified.status, SessionStatus.PHONE_VERIFIED)

        await self.service.send_otp(session.session_id, "email")
        verified = await self.service.verify_otp(session.session_id, "email", CODE)
        self.assertTrue(verified.email_verified)
        self.assertIs(verified.status, SessionStatus.EMAIL_VERIFIED)

        status = await self.service.status(session.session_id)
        self.assertTrue(status.all_verified)

        result = await self.service.complete_login(session.session_id, client_key="1.2.3.4")
        self.assertEqual(decode_token(result["token"], self.config)["sub"], result["account_id"])
        account = await self.accounts.get_by_phone(PHONE)
        self.assertEqual(account["id"], result["account_id"])
        self.assertEqual(account["email"], EMAIL)

        with self.assertRaises(SessionNotFound):
            await self.service.status(session.session_id)
        with self.assertRaises(SessionNotFound):
            await self.service.complete_login(session.session_id)
        self.assertEqual(len(self.events.of_type(SecurityEventType.AUTH_SUCCESS)), 1)

    async def test_whatsapp_channel(self):
        session = await self.service.start(PHONE, EMAIL)
        method_id = await self.service.send_otp(session.session_id, "phone", "whatsapp")
        self.assertEqual(self.gateway.issued[method_id].channel, "whatsapp")

    async def test_unknown_session_fails_everywhere(self):
        session_id = f"{LOGIN_SESSION_PREFIX}{uuid4()}"
        with self.assertRaises(SessionNotFound):
            await self.service.send_otp(session_id, "phone")
        with self.assertRaises(SessionNotFound):
            await self.service.verify_otp(session_id, "phone", CODE)
        with self.assertRaises(SessionNotFound):
            await self.service.complete_login(session_id)
        with self.assertRaises(SessionNotFound):
            await self.service.status(session_id)

    async def test_malformed_input_is_rejected_before_lookup(self):
        with self.assertRaises(ValidationError):
            await self.service.start("2025550123", EMAIL)
        with self.assertRaises(ValidationError):
            await self.service.start(PHONE, "nope")
        with self.assertRaises(ValidationError):
            await self.service.send_otp("seq_auth_nope", "phone")
        session = await self.service.start(PHONE, EMAIL)
        with self.assertRaises(ValidationError):
            await self.service.verify_otp(session.session_id, "phone", "12345")

    async def test_email_send_requires_phone_verification(self):
        session = await self.service.start(PHONE, EMAIL)
        with self.assertRaises(OrderViolation):
            await self.service.send_otp(session.session_id, "email")
        await self.service.send_otp(session.session_id, "phone")
        with self.assertRaises(OrderViolation):
            await self.service.send_otp(session.session_id, "email")

        await self.service.verify_otp(session.session_id, "phone", CODE)
        await self.service.send_otp(session.session_id, "email")
        status = await self.service.status(session.session_id)
        self.assertIs(status.status, SessionStatus.EMAIL_OTP_SENT)

    async def test_verify_before_send_is_order_violation(self):
        session = await self.service.start(PHONE, EMAIL)
        with self.assertRaises(OrderViolation):
            await self.service.verify_otp(session.session_id, "phone", CODE)

    async def test_verified_medium_cannot_be_resent_or_reverified(self):
        session_id = await self._phone_verified_session()
        with self.assertRaises(OrderViolation):
            await self.service.send_otp(session_id, "phone")
        with self.assertRaises(OrderViolation):
            await self.service.verify_otp(session_id, "phone", CODE)

    async def test_complete_requires_both_media(self):
        session_id = await self._phone_verified_session()
        with self.assertRaises(OrderViolation):
            await self.service.complete_login(session_id)

        status = await self.service.status(session_id)
        self.assertIs(status.status, SessionStatus.PHONE_VERIFIED)

    async def test_phone_only_session(self):
        session_id = await self._phone_verified_session(email=None)
        with self.assertRaises(ValidationError):
            await self.service.send_otp(session_id, "email")

        result = await self.service.complete_login(session_id)
        account = await self.accounts.get_by_id(result["account_id"])
        self.assertEqual(account["phone"], PHONE)
        self.assertIsNone(account["email"])

    async def test_expired_session_behaves_as_missing(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        self.clock.advance(self.config.session_ttl_seconds)

        with self.assertRaises(SessionNotFound):
            await self.service.verify_otp(session.session_id, "phone", CODE)

    async def test_status_never_extends_expiry(self):
        session = await self.service.start(PHONE, EMAIL)
        self.clock.advance(self.config.session_ttl_seconds - 1)
        status = await self.service.status(session.session_id)
        self.assertEqual(status.expires_at, session.expires_at)

        self.clock.advance(1)
        with self.assertRaises(SessionNotFound):
            await self.service.status(session.session_id)


class TestAccountResolution(VerificationServiceTestCase):
    async def test_existing_account_gains_email(self):
        existing = await self.accounts.create_account({"phone": PHONE, "email": None})
        session_id = await self._fully_verified_session()

        result = await self.service.complete_login(session_id)

        self.assertEqual(result["account_id"], existing["id"])
        account = await self.accounts.get_by_id(existing["id"])
        self.assertEqual(account["email"], EMAIL)

    async def test_phone_and_email_on_different_accounts(self):
        await self.accounts.create_account({"phone": PHONE, "email": None})
        await self.accounts.create_account({"phone": "+12025550999", "email": EMAIL})
        session_id = await self._fully_verified_session()

        with self.assertRaises(AccountConflict):
            await self.service.complete_login(session_id)

        status = await self.service.status(session_id)
        self.assertIs(status.status, SessionStatus.EMAIL_VERIFIED)


class TestAttempts(VerificationServiceTestCase):
    abuse_threshold = 100

    async def test_cap_abandons_session(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")

        for remaining in (4, 3, 2, 1, 0):
            with self.assertRaises(VerificationFailed) as ctx:
                await self.service.verify_otp(session.session_id, "phone", WRONG)
            self.assertEqual(ctx.exception.attempts_remaining, remaining)

        with self.assertRaises(AttemptsExceeded):
            await self.service.verify_otp(session.session_id, "phone", CODE)
        with self.assertRaises(AttemptsExceeded):
            await self.service.send_otp(session.session_id, "phone")
        with self.assertRaises(AttemptsExceeded):
            await self.service.status(session.session_id)

        record = await self.store.get(session.session_id)
        self.assertIs(record.status, SessionStatus.ABANDONED)
        self.assertEqual(len(self.events.of_type(SecurityEventType.SESSION_ABANDONED)), 1)
        self.assertEqual(len(self.events.of_type(SecurityEventType.VERIFY_FAILED)), 5)

    async def test_last_attempt_can_still_succeed(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        for _ in range(4):
            with self.assertRaises(VerificationFailed):
                await self.service.verify_otp(session.session_id, "phone", WRONG)

        verified = await self.service.verify_otp(session.session_id, "phone", CODE)
        self.assertTrue(verified.phone_verified)

    async def test_resend_resets_attempts(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        for _ in range(2):
            with self.assertRaises(VerificationFailed):
                await self.service.verify_otp(session.session_id, "phone", WRONG)

        await self.service.send_otp(session.session_id, "phone")

        record = await self.store.get(session.session_id)
        self.assertEqual(record.attempts_phone, 0)

    async def test_email_attempts_are_separate(self):
        session_id = await self._phone_verified_session()
        await self.service.send_otp(session_id, "email")
        with self.assertRaises(VerificationFailed) as ctx:
            await self.service.verify_otp(session_id, "email", WRONG)

        self.assertEqual(ctx.exception.attempts_remaining, 4)
        record = await self.store.get(session_id)
        self.assertEqual(record.attempts_phone, 1)
        self.assertEqual(record.attempts_email, 1)
        self.assertTrue(record.phone_verified)

    async def test_superseded_code_is_discarded(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        self.gateway.on_authenticate = lambda: self.service.send_otp(session.session_id, "phone")

        with self.assertRaises(VerificationFailed) as ctx:
            await self.service.verify_otp(session.session_id, "phone", CODE)

        self.assertIn("superseded", ctx.exception.message)
        record = await self.store.get(session.session_id)
        self.assertFalse(record.phone_verified)
        self.assertIs(record.status, SessionStatus.PHONE_OTP_SENT)


class TestAttemptsKeptOnResend(VerificationServiceTestCase):
    abuse_threshold = 100
    config_overrides = {"RESET_ATTEMPTS_ON_RESEND": False}

    async def test_resend_keeps_attempts(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        for _ in range(2):
            with self.assertRaises(VerificationFailed):
                await self.service.verify_otp(session.session_id, "phone", WRONG)

        await self.service.send_otp(session.session_id, "phone")

        record = await self.store.get(session.session_id)
        self.assertEqual(record.attempts_phone, 2)
        with self.assertRaises(VerificationFailed) as ctx:
            await self.service.verify_otp(session.session_id, "phone", WRONG)
        self.assertEqual(ctx.exception.attempts_remaining, 2)


class TestAbuse(VerificationServiceTestCase):
    async def test_rejected_codes_block_the_client(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        for _ in range(5):
            with self.assertRaises(VerificationFailed):
                await self.service.verify_otp(session.session_id, "phone", WRONG, client_key="1.2.3.4")

        other = await self.service.start("+12025550124", EMAIL)
        await self.service.send_otp(other.session_id, "phone")
        with self.assertRaises(Blocked):
            await self.service.verify_otp(other.session_id, "phone", CODE, client_key="1.2.3.4")
        await self.service.verify_otp(other.session_id, "phone", CODE, client_key="5.6.7.8")

        self.assertEqual(len(self.events.of_type(SecurityEventType.SUSPICIOUS_ACTIVITY)), 1)

    async def test_gateway_failure_is_not_abuse(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        self.gateway.fail_authenticate = True

        with self.assertRaises(GatewayError):
            await self.service.verify_otp(session.session_id, "phone", WRONG, client_key="1.2.3.4")

        self.assertEqual(self.events.of_type(SecurityEventType.VERIFY_FAILED), [])
        # first failure ever recorded for this client
        self.assertEqual(await self.abuse.record_failure("1.2.3.4"), 1)
        record = await self.store.get(session.session_id)
        self.assertEqual(record.attempts_phone, 0)
        self.assertFalse(record.phone_verified)

    async def test_provider_outages_do_not_use_up_attempts(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        self.gateway.fail_authenticate = True
        for _ in range(self.config.MAX_OTP_ATTEMPTS):
            with self.assertRaises(GatewayError):
                await self.service.verify_otp(session.session_id, "phone", CODE)

        self.gateway.fail_authenticate = False
        verified = await self.service.verify_otp(session.session_id, "phone", CODE)

        self.assertTrue(verified.phone_verified)
        self.assertEqual(self.events.of_type(SecurityEventType.SESSION_ABANDONED), [])

    async def test_blocked_client_on_unknown_session_gets_not_found(self):
        for _ in range(self.abuse_threshold):
            await self.abuse.record_failure("1.2.3.4")
        self.assertTrue(await self.abuse.is_blocked("1.2.3.4"))

        with self.assertRaises(SessionNotFound):
            await self.service.verify_otp(
                f"{LOGIN_SESSION_PREFIX}{uuid4()}", "phone", CODE, client_key="1.2.3.4"
            )

    async def test_send_failure_leaves_session_untouched(self):
        session = await self.service.start(PHONE, EMAIL)
        self.gateway.fail_sends = True

        with self.assertRaises(GatewayError):
            await self.service.send_otp(session.session_id, "phone")

        record = await self.store.get(session.session_id)
        self.assertIs(record.status, SessionStatus.STARTED)
        self.assertIsNone(record.phone_method_id)


class TestGatewayTimeout(VerificationServiceTestCase):
    config_overrides = {"GATEWAY_TIMEOUT_SECONDS": 0.05}

    async def test_slow_provider_is_a_gateway_error(self):
        session = await self.service.start(PHONE, EMAIL)
        await self.service.send_otp(session.session_id, "phone")
        self.gateway.delay = 1.0

        with self.assertRaises(GatewayError):
            await self.service.verify_otp(session.session_id, "phone", CODE, client_key="1.2.3.4")

        self.assertFalse(await self.abuse.is_blocked("1.2.3.4"))
        self.assertEqual(self.events.of_type(SecurityEventType.VERIFY_FAILED), [])


if __name__ == "__main__":
    unittest.main()
