"""Identity collaborator: durable accounts and credential issuance."""

from __future__ import annotations

import logging
from typing import Any

from auth.config import AuthConfig
from auth.exceptions import AccountConflict, Unauthorized
from auth.interfaces.account_store import AccountStore
from auth.security import create_access_token, decode_token

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(self, account_store: AccountStore, config: AuthConfig | None = None) -> None:
        self._accounts = account_store
        self._config = config or AuthConfig()

    async def find_or_create_account(self, phone: str, email: str | None) -> str:
        """Resolve the account owning ``phone`` (falling back to ``email``), creating it if neither exists.

        A phone and an email that belong to two different accounts is a conflict.
        """
        by_phone = await self._accounts.get_by_phone(phone)
        by_email = await self._accounts.get_by_email(email) if email else None

        if by_phone and by_email and by_phone["id"] != by_email["id"]:
            raise AccountConflict("Phone number and email belong to different accounts")

        if by_phone:
            if email and not by_phone.get("email"):
                await self._accounts.update_account(by_phone["id"], {"email": email})
            return by_phone["id"]

        if by_email:
            if by_email.get("phone") and by_email["phone"] != phone:
                raise AccountConflict("Email is registered with a different phone number")
            return by_email["id"]

        account = await self._accounts.create_account({"phone": phone, "email": email})
        logger.info("Created account %s", account["id"])
        return account["id"]

    async def issue_credential(self, account_id: str) -> dict[str, Any]:
        token, expires_at = create_access_token(account_id, self._config)
        return {"token": token, "expires_at": expires_at}

    async def get_account(self, account_id: str) -> dict | None:
        return await self._accounts.get_by_id(account_id)

    async def phone_in_use(self, phone: str, exclude_account_id: str | None = None) -> bool:
        account = await self._accounts.get_by_phone(phone)
        return account is not None and account["id"] != exclude_account_id

    async def change_phone(self, account_id: str, expected_phone: str, new_phone: str) -> dict:
        return await self._accounts.change_phone(account_id, expected_phone, new_phone)

    async def authenticate_token(self, token: str) -> dict[str, Any]:
        payload = decode_token(token, self._config)
        account = await self._accounts.get_by_id(payload["sub"])
        if not account:
            raise Unauthorized("Account not found")
        return account
