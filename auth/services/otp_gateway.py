"""OTP delivery and checking.

``StytchOtpGateway`` talks to the hosted provider; ``MemoryOtpGateway`` issues
codes locally for development and tests. Both return a provider method id
from ``send`` that must be passed back to ``authenticate``.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from uuid import uuid4

import httpx

from auth.config import AuthConfig
from auth.exceptions import GatewayError
from auth.validators import EMAIL_CHANNEL, mask_phone
from config import Config

logger = logging.getLogger(__name__)

# Provider error types meaning "the code is wrong", as opposed to an outage.
_REJECTION_ERRORS = {
    "otp_code_not_found",
    "invalid_code",
    "unable_to_auth_otp_code",
    "otp_code_expired",
}


def _mask(destination: str) -> str:
    if destination.startswith("+"):
        return mask_phone(destination)
    name, _, domain = destination.partition("@")
    return f"{name[:1]}***@{domain}"


class StytchOtpGateway:
    def __init__(
        self,
        project_id: str,
        secret: str,
        base_url: str = "https://test.stytch.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(project_id, secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AuthConfig | None = None) -> "StytchOtpGateway":
        config = config or AuthConfig()
        if not config.STYTCH_PROJECT_ID or not config.STYTCH_SECRET:
            raise ValueError("STYTCH_PROJECT_ID and STYTCH_SECRET must be set")
        return cls(
            config.STYTCH_PROJECT_ID,
            config.STYTCH_SECRET,
            base_url=config.STYTCH_BASE_URL,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
        )

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            return await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            logger.error("OTP provider request to %s failed: %s", path, exc)
            raise GatewayError() from exc

    async def send(self, destination: str, channel: str) -> str:
        if channel == EMAIL_CHANNEL:
            payload, id_field = {"email": destination}, "email_id"
        else:
            payload, id_field = {"phone_number": destination}, "phone_id"

        response = await self._post(f"/v1/otps/{channel}/send", payload)
        if response.status_code != 200:
            logger.error(
                "OTP send via %s to %s failed with status %s",
                channel,
                _mask(destination),
                response.status_code,
            )
            raise GatewayError("Failed to send OTP")

        method_id = response.json().get(id_field)
        if not method_id:
            raise GatewayError("OTP provider returned no method id")
        logger.info("OTP sent via %s to %s", channel, _mask(destination))
        return method_id

    async def authenticate(self, method_id: str, code: str) -> bool:
        response = await self._post(
            "/v1/otps/authenticate",
            {"method_id": method_id, "code": code},
        )
        if response.status_code == 200:
            return True
        if response.status_code in (400, 401, 404):
            try:
                error_type = response.json().get("error_type")
            except ValueError:
                error_type = None
            if error_type in _REJECTION_ERRORS:
                return False
        logger.error("OTP authenticate failed with status %s", response.status_code)
        raise GatewayError()

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass
class IssuedCode:
    destination: str
    channel: str
    code: str


class MemoryOtpGateway:
    """Local gateway. Codes are logged only outside production."""

    def __init__(self, fixed_code: str | None = None) -> None:
        self.fixed_code = fixed_code
        self.issued: dict[str, IssuedCode] = {}
        self.fail_sends = False
        self.fail_authenticate = False

    def _generate(self) -> str:
        if self.fixed_code:
            return self.fixed_code
        return f"{secrets.randbelow(1_000_000):06d}"

    async def send(self, destination: str, channel: str) -> str:
        if self.fail_sends:
            raise GatewayError("Failed to send OTP")
        method_id = f"{channel}-{uuid4().hex}"
        issued = IssuedCode(destination=destination, channel=channel, code=self._generate())
        self.issued[method_id] = issued
        if not Config.is_production():
            logger.info("OTP for %s via %s: %s", _mask(destination), channel, issued.code)
        return method_id

    async def authenticate(self, method_id: str, code: str) -> bool:
        if self.fail_authenticate:
            raise GatewayError()
        issued = self.issued.get(method_id)
        return issued is not None and secrets.compare_digest(issued.code, code)

    def last_code(self, destination: str) -> str | None:
        for issued in reversed(list(self.issued.values())):
            if issued.destination == destination:
                return issued.code
        return None

    async def aclose(self) -> None:
        return None


def build_gateway(config: AuthConfig | None = None):
    config = config or AuthConfig()
    if config.OTP_GATEWAY == "stytch":
        return StytchOtpGateway.from_config(config)
    return MemoryOtpGateway(fixed_code=config.FIXED_OTP)
