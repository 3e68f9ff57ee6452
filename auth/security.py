"""Credential utilities for auth."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from auth.config import AuthConfig
from auth.exceptions import Unauthorized


def create_access_token(account_id: str, config: AuthConfig | None = None) -> tuple[str, int]:
    config = config or AuthConfig()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload: dict[str, Any] = {
        "sub": account_id,
        "type": "access",
        "exp": expire,
        "iat": now,
        "jti": uuid4().hex,
    }
    token = jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
    return token, int(expire.timestamp())


def decode_token(token: str, config: AuthConfig | None = None) -> dict[str, Any]:
    config = config or AuthConfig()
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError as exc:
        raise Unauthorized("Invalid token") from exc
    if payload.get("type") != "access" or not payload.get("sub"):
        raise Unauthorized("Invalid access token")
    return payload
