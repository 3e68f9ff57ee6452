"""Auth configuration management."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path

# Load .env file before reading config
try:
    from dotenv import load_dotenv

    # Try loading from project root
    env_path = Path(__file__).parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=True)
    else:
        load_dotenv(override=True)
except ImportError:
    pass


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


_DEFAULT_JWT_SECRET = secrets.token_urlsafe(32)


@dataclass(frozen=True)
class RateLimitTier:
    """A named rate-limit class: at most ``max_requests`` per ``window_seconds``."""

    name: str
    window_seconds: int
    max_requests: int

    def bucket_key(self, identity: str) -> str:
        return f"{self.name}:{identity}"


def _tier(name: str, window_seconds: int, max_requests: int) -> RateLimitTier:
    prefix = f"RATE_LIMIT_{name.upper()}"
    return RateLimitTier(
        name=name,
        window_seconds=int(os.getenv(f"{prefix}_WINDOW_SECONDS", str(window_seconds))),
        max_requests=int(os.getenv(f"{prefix}_MAX_REQUESTS", str(max_requests))),
    )


@dataclass(frozen=True)
class AuthConfig:
    """Configuration values for verification flows."""

    SESSION_TTL_MINUTES: int = int(os.getenv("SESSION_TTL_MINUTES", "10"))
    MAX_OTP_ATTEMPTS: int = int(os.getenv("MAX_OTP_ATTEMPTS", "5"))
    RESET_ATTEMPTS_ON_RESEND: bool = _parse_bool(os.getenv("RESET_ATTEMPTS_ON_RESEND"), True)

    ABUSE_WINDOW_MINUTES: int = int(os.getenv("ABUSE_WINDOW_MINUTES", "15"))
    ABUSE_THRESHOLD: int = int(os.getenv("ABUSE_THRESHOLD", "5"))

    GENERAL_RATE_LIMIT: RateLimitTier = _tier("general", 15 * 60, 100)
    OTP_SEND_RATE_LIMIT: RateLimitTier = _tier("otp_send", 5 * 60, 3)
    LOGIN_RATE_LIMIT: RateLimitTier = _tier("login", 15 * 60, 5)
    PHONE_CHANGE_RATE_LIMIT: RateLimitTier = _tier("phone_change", 60 * 60, 3)

    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    OTP_GATEWAY: str = os.getenv("OTP_GATEWAY", "memory")
    FIXED_OTP: str | None = os.getenv("FIXED_OTP")
    STYTCH_PROJECT_ID: str | None = os.getenv("STYTCH_PROJECT_ID")
    STYTCH_SECRET: str | None = os.getenv("STYTCH_SECRET")
    STYTCH_BASE_URL: str = os.getenv("STYTCH_BASE_URL", "https://test.stytch.com")

    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
    JWT_ALGORITHM: str = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
    JWT_SECRET: str = os.getenv("AUTH_JWT_SECRET", _DEFAULT_JWT_SECRET)

    # Session/abuse/rate state: "memory" (single process) or "redis" (shared)
    SESSION_STORE: str = os.getenv("SESSION_STORE", "memory")
    # Accounts: "sql" (SQLAlchemy, Config.DATABASE_URL) or "memory" (testing)
    ACCOUNT_STORE: str = os.getenv("ACCOUNT_STORE", "memory")

    SWEEP_INTERVAL_SECONDS: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
    TRUST_PROXY_HEADERS: bool = _parse_bool(os.getenv("TRUST_PROXY_HEADERS"), False)

    @property
    def session_ttl_seconds(self) -> int:
        return self.SESSION_TTL_MINUTES * 60

    @property
    def abuse_window_seconds(self) -> int:
        return self.ABUSE_WINDOW_MINUTES * 60
