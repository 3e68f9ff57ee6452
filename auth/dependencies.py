"""Auth dependency helpers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import Depends, Header, Request
from redis.asyncio import Redis

from auth.config import AuthConfig, RateLimitTier
from auth.exceptions import Blocked, RateLimited, Unauthorized
from auth.interfaces.account_store import AccountStore
from auth.interfaces.rate_limiter import AbuseDetector, RateLimiter
from auth.services.identity_service import IdentityService
from auth.services.otp_gateway import build_gateway
from auth.services.phone_change_service import PhoneChangeService
from auth.services.verification_service import VerificationService
from auth.stores.memory_store import (
    MemoryAbuseDetector,
    MemoryAccountStore,
    MemoryPhoneChangeSessionStore,
    MemoryRateLimiter,
    MemoryVerificationSessionStore,
)
from config import Config

logger = logging.getLogger(__name__)

_config = AuthConfig()
_components: dict[str, Any] = {}


def get_auth_config() -> AuthConfig:
    return _config


def _build_keyed_stores() -> dict[str, Any]:
    """Session, abuse and rate-limit state based on SESSION_STORE."""
    ttl = _config.session_ttl_seconds
    if _config.SESSION_STORE == "redis":
        from auth.stores.redis_store import (
            RedisAbuseDetector,
            RedisPhoneChangeSessionStore,
            RedisRateLimiter,
            RedisVerificationSessionStore,
        )

        client = Redis.from_url(Config.REDIS_URL)
        return {
            "redis": client,
            "login_sessions": RedisVerificationSessionStore(client, ttl),
            "change_sessions": RedisPhoneChangeSessionStore(client, ttl),
            "abuse": RedisAbuseDetector(
                client, _config.ABUSE_THRESHOLD, _config.abuse_window_seconds
            ),
            "limiter": RedisRateLimiter(client),
        }
    # Fallback to memory stores for development/testing
    return {
        "login_sessions": MemoryVerificationSessionStore(ttl),
        "change_sessions": MemoryPhoneChangeSessionStore(ttl),
        "abuse": MemoryAbuseDetector(_config.ABUSE_THRESHOLD, _config.abuse_window_seconds),
        "limiter": MemoryRateLimiter(),
    }


def _build_account_store() -> AccountStore:
    if _config.ACCOUNT_STORE == "sql":
        from auth.stores.sql_store import SqlAccountStore

        return SqlAccountStore()
    return MemoryAccountStore()


def _get_components() -> dict[str, Any]:
    if not _components:
        _components.update(_build_keyed_stores())
        _components["accounts"] = _build_account_store()
        _components["gateway"] = build_gateway(_config)
        logger.info(
            "Auth components ready (sessions=%s, accounts=%s, gateway=%s)",
            _config.SESSION_STORE,
            _config.ACCOUNT_STORE,
            _config.OTP_GATEWAY,
        )
    return _components


def get_rate_limiter() -> RateLimiter:
    return _get_components()["limiter"]


def get_abuse_detector() -> AbuseDetector:
    return _get_components()["abuse"]


def get_identity_service() -> IdentityService:
    return IdentityService(_get_components()["accounts"], _config)


def get_verification_service() -> VerificationService:
    components = _get_components()
    return VerificationService(
        store=components["login_sessions"],
        gateway=components["gateway"],
        identity=get_identity_service(),
        abuse=components["abuse"],
        config=_config,
    )


def get_phone_change_service() -> PhoneChangeService:
    components = _get_components()
    return PhoneChangeService(
        store=components["change_sessions"],
        gateway=components["gateway"],
        identity=get_identity_service(),
        abuse=components["abuse"],
        limiter=components["limiter"],
        config=_config,
    )


def get_sweepables() -> list[Any]:
    """Everything holding TTL-bound state, for the background sweeper."""
    components = _get_components()
    return [
        components["login_sessions"],
        components["change_sessions"],
        components["abuse"],
        components["limiter"],
    ]


async def close_components() -> None:
    if not _components:
        return
    await _components["gateway"].aclose()
    if "redis" in _components:
        await _components["redis"].aclose()
    _components.clear()


def get_client_key(request: Request, config: AuthConfig = Depends(get_auth_config)) -> str:
    if config.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


_TIERS: dict[str, Callable[[AuthConfig], RateLimitTier]] = {
    "general": lambda config: config.GENERAL_RATE_LIMIT,
    "otp_send": lambda config: config.OTP_SEND_RATE_LIMIT,
    "login": lambda config: config.LOGIN_RATE_LIMIT,
}


def enforce_rate_limit(tier_name: str) -> Callable[..., Awaitable[None]]:
    """Dependency limiting requests per client IP within one tier."""
    select_tier = _TIERS[tier_name]

    async def dependency(
        client_key: str = Depends(get_client_key),
        config: AuthConfig = Depends(get_auth_config),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        tier = select_tier(config)
        key = tier.bucket_key(client_key)
        if not await limiter.allow(key, tier.max_requests, tier.window_seconds):
            retry_after = await limiter.retry_after(key, tier.window_seconds)
            logger.warning("Rate limit %s exceeded for %s", tier.name, client_key)
            raise RateLimited(retry_after=retry_after)

    dependency.__name__ = f"enforce_{tier_name}_rate_limit"
    return dependency


async def get_current_account(
    authorization: str | None = Header(default=None),
    client_key: str = Depends(get_client_key),
    identity: IdentityService = Depends(get_identity_service),
    abuse: AbuseDetector = Depends(get_abuse_detector),
) -> dict:
    if await abuse.is_blocked(client_key):
        raise Blocked()
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Not authenticated")
    try:
        return await identity.authenticate_token(token.strip())
    except Unauthorized:
        await abuse.record_failure(client_key)
        raise
