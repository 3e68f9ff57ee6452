"""Rate limiter and abuse detector interfaces."""

from __future__ import annotations

from typing import Protocol


class RateLimiter(Protocol):
    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        ...

    async def retry_after(self, key: str, window_seconds: int) -> int:
        ...

    async def sweep(self) -> int:
        ...


class AbuseDetector(Protocol):
    async def record_failure(self, client_key: str) -> int:
        ...

    async def record_success(self, client_key: str) -> None:
        ...

    async def is_blocked(self, client_key: str) -> bool:
        ...

    async def sweep(self) -> int:
        ...
