"""In-memory auth stores."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Generic, TypeVar
from uuid import uuid4

from auth.audit import SecurityEventLogger, SecurityEventType, Severity, security_events
from auth.exceptions import AccountConflict, SessionNotFound
from auth.interfaces.session_store import Mutator
from auth.models import AbuseRecord, PhoneChangeSession, RateLimitBucket, VerificationSession
from auth.validators import LOGIN_SESSION_PREFIX, PHONE_CHANGE_SESSION_PREFIX

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
R = TypeVar("R", VerificationSession, PhoneChangeSession)


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class MemorySessionStore(Generic[R]):
    def __init__(self, prefix: str, ttl_seconds: int, clock: Clock = time.time) -> None:
        self._prefix = prefix
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: dict[str, R] = {}
        self._locks = KeyedLocks()

    def _new_session_id(self) -> str:
        return f"{self._prefix}{uuid4()}"

    def _insert(self, record: R) -> R:
        self._records[record.session_id] = record
        return record.copy()

    def _live(self, session_id: str) -> R:
        record = self._records.get(session_id)
        if record is None:
            raise SessionNotFound()
        if record.is_expired(self._clock()):
            self._records.pop(session_id, None)
            logger.debug("Dropped expired session %s", session_id)
            raise SessionNotFound()
        return record

    async def get(self, session_id: str) -> R:
        return self._live(session_id).copy()

    async def update(self, session_id: str, mutator: Mutator) -> R:
        async with self._locks.hold(session_id):
            current = self._live(session_id)
            draft = current.copy()
            mutator(draft)
            # identity and lifetime are fixed at creation
            draft.session_id = current.session_id
            draft.expires_at = current.expires_at
            self._records[session_id] = draft
            return draft.copy()

    async def delete(self, session_id: str) -> None:
        async with self._locks.hold(session_id):
            self._records.pop(session_id, None)

    async def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for key in expired:
            self._records.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class MemoryVerificationSessionStore(MemorySessionStore[VerificationSession]):
    def __init__(self, ttl_seconds: int, clock: Clock = time.time) -> None:
        super().__init__(LOGIN_SESSION_PREFIX, ttl_seconds, clock)

    async def create(self, phone: str, email: str | None) -> VerificationSession:
        now = self._clock()
        return self._insert(
            VerificationSession(
                session_id=self._new_session_id(),
                phone=phone,
                email=email,
                created_at=now,
                expires_at=now + self._ttl_seconds,
            )
        )


class MemoryPhoneChangeSessionStore(MemorySessionStore[PhoneChangeSession]):
    def __init__(self, ttl_seconds: int, clock: Clock = time.time) -> None:
        super().__init__(PHONE_CHANGE_SESSION_PREFIX, ttl_seconds, clock)

    async def create(
        self,
        account_id: str,
        current_phone: str,
        new_phone: str,
        old_method_id: str,
    ) -> PhoneChangeSession:
        now = self._clock()
        return self._insert(
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


class MemoryAbuseDetector:
    """Failure counter per client key over a window anchored at the first failure.

    Reaching ``threshold`` blocks the key until the window elapses. Successes
    never lower the count.
    """

    def __init__(
        self,
        threshold: int,
        window_seconds: int,
        events: SecurityEventLogger | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._threshold = threshold
        self._window_seconds = window_seconds
        self._events = events or security_events
        self._clock = clock
        self._lock = asyncio.Lock()
        self._records: dict[str, AbuseRecord] = {}

    def _current(self, client_key: str, now: float) -> AbuseRecord | None:
        record = self._records.get(client_key)
        if record and record.is_expired(now, self._window_seconds):
            del self._records[client_key]
            return None
        return record

    async def record_failure(self, client_key: str) -> int:
        now = self._clock()
        async with self._lock:
            record = self._current(client_key, now)
            if record is None:
                record = AbuseRecord(client_key=client_key, window_start=now)
                self._records[client_key] = record
            record.failure_count += 1
            count = record.failure_count

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
        async with self._lock:
            record = self._current(client_key, self._clock())
        if record is not None:
            logger.info(
                "Success for %s leaves %d failures in the current window",
                client_key,
                record.failure_count,
            )

    async def is_blocked(self, client_key: str) -> bool:
        async with self._lock:
            record = self._current(client_key, self._clock())
            return record is not None and record.failure_count >= self._threshold

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [
                key for key, record in self._records.items()
                if record.is_expired(now, self._window_seconds)
            ]
            for key in expired:
                del self._records[key]
        return len(expired)


class MemoryRateLimiter:
    """Fixed window per bucket key, opened by the first request.

    Denied requests are not counted and never move the window.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._buckets: dict[str, RateLimitBucket] = {}

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket.is_expired(now):
                bucket = RateLimitBucket(
                    key=key,
                    window_start=now,
                    window_seconds=window_seconds,
                    limit=limit,
                )
                self._buckets[key] = bucket
            if bucket.count >= bucket.limit:
                return False
            bucket.count += 1
            return True

    async def retry_after(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0
            return math.ceil(bucket.reset_in(self._clock()))

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, bucket in self._buckets.items() if bucket.is_expired(now)]
            for key in expired:
                del self._buckets[key]
        return len(expired)


class MemoryAccountStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._accounts_by_id: dict[str, dict[str, Any]] = {}
        self._ids_by_phone: dict[str, str] = {}
        self._ids_by_email: dict[str, str] = {}

    async def get_by_id(self, account_id: str) -> dict | None:
        async with self._lock:
            account = self._accounts_by_id.get(account_id)
            return dict(account) if account else None

    async def get_by_phone(self, phone: str) -> dict | None:
        async with self._lock:
            account_id = self._ids_by_phone.get(phone)
            return dict(self._accounts_by_id[account_id]) if account_id else None

    async def get_by_email(self, email: str) -> dict | None:
        async with self._lock:
            account_id = self._ids_by_email.get(email.lower())
            return dict(self._accounts_by_id[account_id]) if account_id else None

    async def create_account(self, data: dict) -> dict:
        async with self._lock:
            payload = dict(data)
            if payload.get("phone") in self._ids_by_phone:
                raise AccountConflict("Phone number is already registered")
            if payload.get("email"):
                payload["email"] = payload["email"].lower()
                if payload["email"] in self._ids_by_email:
                    raise AccountConflict("Email is already registered")
            payload["id"] = uuid4().hex
            payload["created_at"] = payload.get("created_at", int(time.time()))
            payload["updated_at"] = payload.get("updated_at", payload["created_at"])
            self._accounts_by_id[payload["id"]] = payload
            if payload.get("phone"):
                self._ids_by_phone[payload["phone"]] = payload["id"]
            if payload.get("email"):
                self._ids_by_email[payload["email"]] = payload["id"]
            return dict(payload)

    async def update_account(self, account_id: str, updates: dict) -> dict:
        async with self._lock:
            account = self._accounts_by_id.get(account_id)
            if not account:
                raise ValueError("Account not found")
            if "email" in updates and updates["email"]:
                email = updates["email"].lower()
                owner = self._ids_by_email.get(email)
                if owner and owner != account_id:
                    raise AccountConflict("Email is already registered")
                if account.get("email"):
                    self._ids_by_email.pop(account["email"], None)
                self._ids_by_email[email] = account_id
                updates = {**updates, "email": email}
            for key, value in updates.items():
                if key not in {"id", "phone"}:
                    account[key] = value
            account["updated_at"] = int(time.time())
            return dict(account)

    async def change_phone(self, account_id: str, expected_phone: str, new_phone: str) -> dict:
        async with self._lock:
            account = self._accounts_by_id.get(account_id)
            if not account:
                raise AccountConflict("Account not found")
            if account.get("phone") != expected_phone:
                raise AccountConflict("Phone number changed during verification")
            owner = self._ids_by_phone.get(new_phone)
            if owner and owner != account_id:
                raise AccountConflict("New phone number is already registered by another account")
            self._ids_by_phone.pop(expected_phone, None)
            self._ids_by_phone[new_phone] = account_id
            account["phone"] = new_phone
            account["updated_at"] = int(time.time())
            return dict(account)
