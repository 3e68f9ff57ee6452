"""OTP provider gateway interface."""

from __future__ import annotations

from typing import Protocol


class OtpGateway(Protocol):
    async def send(self, destination: str, channel: str) -> str:
        """Issue a challenge and return its opaque method id.

        Raises ``GatewayError`` on transport or provider failure.
        """
        ...

    async def authenticate(self, method_id: str, code: str) -> bool:
        """``False`` when the provider rejects the code, ``GatewayError`` when it cannot answer."""
        ...
