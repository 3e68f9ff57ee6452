"""Session store interfaces for ephemeral verification state."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from auth.models import PhoneChangeSession, VerificationSession

R = TypeVar("R")

Mutator = Callable[[R], Any]


class SessionStore(Protocol[R]):
    """Keyed, TTL-bound records.

    ``get`` and ``update`` raise ``SessionNotFound`` for unknown or expired ids;
    expired records are dropped on access. ``update`` applies the mutator to a
    copy under a per-key lock and commits it only if the mutator returns.
    """

    async def get(self, session_id: str) -> R:
        ...

    async def update(self, session_id: str, mutator: Mutator) -> R:
        ...

    async def delete(self, session_id: str) -> None:
        ...

    async def sweep(self) -> int:
        ...


class VerificationSessionStore(SessionStore[VerificationSession], Protocol):
    async def create(self, phone: str, email: str | None) -> VerificationSession:
        ...


class PhoneChangeSessionStore(SessionStore[PhoneChangeSession], Protocol):
    async def create(
        self,
        account_id: str,
        current_phone: str,
        new_phone: str,
        old_method_id: str,
    ) -> PhoneChangeSession:
        ...
