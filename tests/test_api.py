import asyncio
import unittest

from fastapi.testclient import TestClient

from api.main import app, sweep_once
from auth.dependencies import (
    get_abuse_detector,
    get_auth_config,
    get_identity_service,
    get_phone_change_service,
    get_rate_limiter,
    get_verification_service,
)
from auth.services.identity_service import IdentityService
from auth.services.otp_gateway import MemoryOtpGateway
from auth.services.phone_change_service import PhoneChangeService
from auth.services.verification_service import VerificationService
from auth.stores.memory_store import (
    MemoryAbuseDetector,
    MemoryAccountStore,
    MemoryPhoneChangeSessionStore,
    MemoryRateLimiter,
    MemoryVerificationSessionStore,
)
from tests.support import FakeClock, RecordingEvents, make_config

PHONE = "+12025550123"
EMAIL = "a@b.com"
CODE = "123456"
BASE = "/api/v1/auth"


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.events = RecordingEvents()
        config = make_config()
        self.accounts = MemoryAccountStore()
        identity = IdentityService(self.accounts, config)
        gateway = MemoryOtpGateway(fixed_code=CODE)
        self.abuse = MemoryAbuseDetector(
            config.ABUSE_THRESHOLD, config.abuse_window_seconds, self.events, self.clock
        )
        self.limiter = MemoryRateLimiter(clock=self.clock)
        self.login_sessions = MemoryVerificationSessionStore(config.session_ttl_seconds, clock=self.clock)
        self.change_sessions = MemoryPhoneChangeSessionStore(config.session_ttl_seconds, clock=self.clock)
        verification = VerificationService(
            self.login_sessions, gateway, identity, self.abuse, config, self.events
        )
        phone_change = PhoneChangeService(
            self.change_sessions, gateway, identity, self.abuse, self.limiter, config, self.events
        )

        app.dependency_overrides = {
            get_auth_config: lambda: config,
            get_rate_limiter: lambda: self.limiter,
            get_abuse_detector: lambda: self.abuse,
            get_identity_service: lambda: identity,
            get_verification_service: lambda: verification,
            get_phone_change_service: lambda: phone_change,
        }
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def post(self, path, body, token=None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        return self.client.post(f"{BASE}{path}", json=body, headers=headers)

    def login(self, phone=PHONE, email=EMAIL):
        response = self.post("/verification/start", {"phone": phone, "email": email})
        session_id = response.json()["data"]["sessionId"]
        self.post("/verification/send-otp", {"sessionId": session_id, "medium": "phone"})
        self.post("/verification/verify-otp", {"sessionId": session_id, "medium": "phone", "otp": CODE})
        self.post("/verification/send-otp", {"sessionId": session_id, "medium": "email"})
        self.post("/verification/verify-otp", {"sessionId": session_id, "medium": "email", "otp": CODE})
        return self.post("/verification/complete-login", {"sessionId": session_id}).json()["data"]


class TestVerificationApi(ApiTestCase):
    def test_end_to_end_login(self):
        response = self.post("/verification/start", {"phone": PHONE, "email": EMAIL})
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        session_id = body["data"]["sessionId"]
        self.assertTrue(session_id.startswith("seq_auth_"))

        response = self.post("/verification/send-otp", {"sessionId": session_id, "medium": "phone"})
        self.assertEqual(response.status_code, 200)
        self.assertIn("methodId", response.json()["data"])

        response = self.post(
            "/verification/verify-otp", {"sessionId": session_id, "medium": "phone", "otp": CODE}
        )
        self.assertEqual(
            response.json()["data"],
            {"verified": True, "phoneVerified": True, "emailVerified": False},
        )

        self.post("/verification/send-otp", {"sessionId": session_id, "medium": "email"})
        response = self.post(
            "/verification/verify-otp", {"sessionId": session_id, "medium": "email", "otp": CODE}
        )
        self.assertTrue(response.json()["data"]["emailVerified"])

        status = self.client.get(f"{BASE}/verification/status/{session_id}").json()["data"]
        self.assertTrue(status["bothVerified"])

        response = self.post("/verification/complete-login", {"sessionId": session_id})
        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertTrue(data["token"])
        self.assertGreater(data["tokenExpiry"], 0)
        self.assertEqual(asyncio.run(self.accounts.get_by_phone(PHONE))["id"], data["accountId"])

        response = self.client.get(f"{BASE}/verification/status/{session_id}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["data"]["error_code"], "SESSION_NOT_FOUND")

    def test_email_before_phone(self):
        session_id = self.post("/verification/start", {"phone": PHONE, "email": EMAIL}).json()["data"]["sessionId"]

        response = self.post("/verification/send-otp", {"sessionId": session_id, "medium": "email"})

        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.json()["success"])
        self.assertEqual(response.json()["data"]["error_code"], "ORDER_VIOLATION")

    def test_wrong_code(self):
        session_id = self.post("/verification/start", {"phone": PHONE, "email": EMAIL}).json()["data"]["sessionId"]
        self.post("/verification/send-otp", {"sessionId": session_id, "medium": "phone"})

        response = self.post(
            "/verification/verify-otp", {"sessionId": session_id, "medium": "phone", "otp": "000000"}
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["data"]["error_code"], "VERIFICATION_FAILED")
        self.assertEqual(response.json()["data"]["attempts_remaining"], 4)

    def test_invalid_phone(self):
        response = self.post("/verification/start", {"phone": "12345", "email": EMAIL})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["data"]["error_code"], "VALIDATION_ERROR")
        self.assertEqual(response.json()["data"]["field"], "phone")

    def test_missing_field(self):
        response = self.post("/verification/send-otp", {"medium": "phone"})
        self.assertEqual(response.status_code, 422)
        body = response.json()
        self.assertEqual(body["data"]["error_code"], "VALIDATION_ERROR")
        self.assertEqual(body["data"]["fields"][0]["field"], "sessionId")

    def test_otp_send_rate_limit(self):
        session_id = self.post("/verification/start", {"phone": PHONE, "email": EMAIL}).json()["data"]["sessionId"]
        for _ in range(3):
            response = self.post("/verification/send-otp", {"sessionId": session_id, "medium": "phone"})
            self.assertEqual(response.status_code, 200)

        response = self.post("/verification/send-otp", {"sessionId": session_id, "medium": "phone"})

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["data"]["error_code"], "RATE_LIMITED")
        self.assertEqual(response.headers["Retry-After"], "300")

    def test_login_rate_limit(self):
        for _ in range(5):
            self.assertEqual(
                self.post("/verification/start", {"phone": PHONE, "email": EMAIL}).status_code, 201
            )
        response = self.post("/verification/start", {"phone": PHONE, "email": EMAIL})
        self.assertEqual(response.status_code, 429)

        self.clock.advance(15 * 60)
        self.assertEqual(
            self.post("/verification/start", {"phone": PHONE, "email": EMAIL}).status_code, 201
        )

    def test_unknown_route_uses_envelope(self):
        response = self.client.get(f"{BASE}/nothing-here")
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.json(), {"status": "healthy"})


class TestPhoneChangeApi(ApiTestCase):
    def test_change_phone(self):
        token = self.login()["token"]

        response = self.post("/phone-change/start", {"newPhone": "+12025550199"}, token)
        self.assertEqual(response.status_code, 201)
        session_id = response.json()["data"]["sessionId"]
        self.assertTrue(session_id.startswith("phone_change_"))

        response = self.post("/phone-change/verify-old", {"sessionId": session_id, "otp": CODE}, token)
        self.assertEqual(response.json()["data"], {"oldVerified": True, "newOtpSent": True})

        response = self.post("/phone-change/verify-new", {"sessionId": session_id, "otp": CODE}, token)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["phone"], "+12025550199")

        response = self.client.get(
            f"{BASE}/phone-change/status/{session_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
        self.assertEqual(response.status_code, 404)

    def test_verify_new_first(self):
        token = self.login()["token"]
        session_id = self.post(
            "/phone-change/start", {"newPhone": "+12025550199"}, token
        ).json()["data"]["sessionId"]

        response = self.post("/phone-change/verify-new", {"sessionId": session_id, "otp": CODE}, token)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["data"]["error_code"], "ORDER_VIOLATION")

    def test_requires_bearer_token(self):
        response = self.post("/phone-change/start", {"newPhone": "+12025550199"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["data"]["error_code"], "UNAUTHORIZED")

    def test_bad_tokens_feed_abuse_detector(self):
        for _ in range(5):
            response = self.post("/phone-change/start", {"newPhone": "+12025550199"}, "not-a-jwt")
            self.assertEqual(response.status_code, 401)

        response = self.post("/phone-change/start", {"newPhone": "+12025550199"}, "not-a-jwt")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["data"]["error_code"], "BLOCKED")


class TestSweep(ApiTestCase):
    def test_sweep_once(self):
        self.post("/verification/start", {"phone": PHONE, "email": EMAIL})
        self.clock.advance(15 * 60)

        removed = asyncio.run(
            sweep_once([self.login_sessions, self.change_sessions, self.abuse, self.limiter])
        )
        # the session plus the general and login rate-limit buckets
        self.assertEqual(removed, 3)
        self.assertEqual(len(self.login_sessions), 0)


if __name__ == "__main__":
    unittest.main()
