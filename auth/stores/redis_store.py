"""
Redis-backed auth stores.

Same interfaces as the memory stores, for deployments running several
workers. Session records are JSON values whose key TTL matches their
remaining lifetime; updates are WATCH/MULTI compare-and-set loops. Counters
use Lua scripts so each check-and-increment is a single atomic step.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from typing import Generic, TypeVar
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import WatchError

from auth.audit import SecurityEventLogger, SecurityEventType, Severity, security_events
from auth.exceptions import AuthException, SessionNotFound
from auth.interfaces.session_store import Mutator
from auth.models import PhoneChangeSession, VerificationSession
from auth.validators import LOGIN_SESSION_PREFIX, PHONE_CHANGE_SESSION_PREFIX

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
R = TypeVar("R", VerificationSession, PhoneChangeSession)

# Fixed window opened by the first request; denials are not counted.
FIXED_WINDOW_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
if current then
    redis.call('INCR', KEYS[1])
else
    redis.call('SET', KEYS[1], 1, 'PX', ARGV[2])
end
return 1
"""

# Failure counter whose window starts at the first failure.
FAILURE_COUNT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""


class RedisSessionStore(Generic[R]):
    def __init__(
        self,
        client: Redis,
        prefix: str,
        ttl_seconds: int,
        record_type: type[R],
        namespace: str = "auth:session:",
        clock: Clock = time.time,
        max_retries: int = 10,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._ttl_seconds = ttl_seconds
        self._record_type = record_type
        self._namespace = namespace
        self._clock = clock
        self._max_retries = max_retries

    def _key(self, session_id: str) -> str:
        return f"{self._namespace}{session_id}"

    def _new_session_id(self) -> str:
        return f"{self._prefix}{uuid4()}"

    def _decode(self, raw: str | bytes) -> R:
        return self._record_type.from_dict(json.loads(raw))

    @staticmethod
    def _ttl_ms(record: R, now: float) -> int:
        return max(1, int((record.expires_at - now) * 1000))

    async def _insert(self, record: R) -> R:
        await self._client.set(
            self._key(record.session_id),
            json.dumps(record.to_dict()),
            px=self._ttl_ms(record, self._clock()),
        )
        return record

    async def get(self, session_id: str) -> R:
        key = self._key(session_id)
        raw = await self._client.get(key)
        if raw is None:
            raise SessionNotFound()
        record = self._decode(raw)
        if record.is_expired(self._clock()):
            await self._client.delete(key)
            raise SessionNotFound()
        return record

    async def update(self, session_id: str, mutator: Mutator) -> R:
        key = self._key(session_id)
        for _ in range(self._max_retries):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        raise SessionNotFound()
                    current = self._decode(raw)
                    now = self._clock()
                    if current.is_expired(now):
                        await pipe.unwatch()
                        await self._client.delete(key)
                        raise SessionNotFound()
                    draft = current.copy()
                    mutator(draft)
                    draft.session_id = current.session_id
                    draft.expires_at = current.expires_at
                    pipe.multi()
                    pipe.set(key, json.dumps(draft.to_dict()), px=self._ttl_ms(draft, now))
                    await pipe.execute()
                    return draft
                except WatchError:
                    logger.debug("Concurrent update on %s, retrying", session_id)
                    continue
        raise AuthException("Session is busy, please retry", status_code=409)

    async def delete(self, session_id: str) -> None:
        await self._client.delete(self._key(session_id))

    async def sweep(self) -> int:
        # key TTLs evict expired sessions
        return 0


class RedisVerificationSessionStore(RedisSessionStore[VerificationSession]):
    def __init__(self, client: Redis, ttl_seconds: int, clock: Clock = time.time) -> None:
        super().__init__(client, LOGIN_SESSION_PREFIX, ttl_seconds, VerificationSession, clock=clock)

    async def create(self, phone: str, email: str | None) -> VerificationSession:
        now = self._clock()
        return await self._insert(
            VerificationSession(
                session_id=self._new_session_id(),
                phone=phone,
                email=email,
                created_at=now,
                expires_at=now + self._ttl_seconds,
            )
        )


class RedisPhoneChangeSessionStore(RedisSessionStore[PhoneChangeSession]):
    def __init__(self, client: Redis, ttl_seconds: int, clock: Clock = time.time) -> None:
        super().__init__(client, PHONE_CHANGE_SESSION_PREFIX, ttl_seconds, PhoneChangeSession, clock=clock)

    async def create(
        self,
        account_id: str,
        current_phone: str,
        new_phone: str,
        old_method_id: str,
    ) -> PhoneChangeSession:
        now = self._clock()
        return await self._insert(
            PhoneChangeSession(
                session_id=self._new_session_id(),
                account_id=account_id,
                current_phone=current_phone,
                new_phone=new_phone,
                old_method_id=old_method_id,
                created_at=now,
                expires_at=now + self._ttl_seconds,
            )
        )


class RedisRateLimiter:
    def __init__(self, client: Redis, namespace: str = "rl:") -> None:
        self._client = client
        self._namespace = namespace
        self._script = client.register_script(FIXED_WINDOW_SCRIPT)

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        allowed = await self._script(
            keys=[f"{self._namespace}{key}"],
            args=[limit, window_seconds * 1000],
        )
        return bool(int(allowed))

    async def retry_after(self, key: str, window_seconds: int) -> int:
        ttl_ms = await self._client.pttl(f"{self._namespace}{key}")
        return math.ceil(ttl_ms / 1000) if ttl_ms and ttl_ms > 0 else 0

    async def sweep(self) -> int:
        return 0


class RedisAbuseDetector:
    def __init__(
        self,
        client: Redis,
        threshold: int,
        window_seconds: int,
        events: SecurityEventLogger | None = None,
        namespace: str = "abuse:",
    ) -> None:
        self._client = client
        self._threshold = threshold
        self._window_seconds = window_seconds
        self._events = events or security_events
        self._namespace = namespace
        self._script = client.register_script(FAILURE_COUNT_SCRIPT)

    def _key(self, client_key: str) -> str:
        return f"{self._namespace}{client_key}"

    async def record_failure(self, client_key: str) -> int:
        count = int(
            await self._script(
                keys=[self._key(client_key)],
                args=[self._window_seconds * 1000],
            )
        )
        if count == self._threshold:
            self._events.emit(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                Severity.CRITICAL,
                client_key=client_key,
                attempts=count,
                time_window=self._window_seconds,
                reason="Multiple failed authentication attempts",
            )
        return count

    async def record_success(self, client_key: str) -> None:
        raw = await self._client.get(self._key(client_key))
        if raw is not None:
            logger.info(
                "Success for %s leaves %s failures in the current window",
                client_key,
                int(raw),
            )

    async def is_blocked(self, client_key: str) -> bool:
        raw = await self._client.get(self._key(client_key))
        return raw is not None and int(raw) >= self._threshold

    async def sweep(self) -> int:
        return 0
