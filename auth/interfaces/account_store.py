"""Account store interface."""

from __future__ import annotations

from typing import Protocol


class AccountStore(Protocol):
    async def get_by_id(self, account_id: str) -> dict | None:
        ...

    async def get_by_phone(self, phone: str) -> dict | None:
        ...

    async def get_by_email(self, email: str) -> dict | None:
        ...

    async def create_account(self, data: dict) -> dict:
        ...

    async def update_account(self, account_id: str, updates: dict) -> dict:
        ...

    async def change_phone(self, account_id: str, expected_phone: str, new_phone: str) -> dict:
        """Compare-and-set the phone number; raises ``AccountConflict`` on mismatch."""
        ...
