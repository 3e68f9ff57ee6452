"""
Security event logging.

Events are written to the ``auth.security`` logger at a level derived from
their severity, then handed to any registered listeners (alerting hooks,
tests).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("auth.security")


class SecurityEventType(str, Enum):
    VERIFY_STARTED = "verify.started"
    VERIFY_FAILED = "verify.failed"
    VERIFY_COMPLETED = "verify.completed"
    SESSION_ABANDONED = "verify.abandoned"
    AUTH_SUCCESS = "auth.success"
    PHONE_CHANGED = "account.phone_changed"
    SUSPICIOUS_ACTIVITY = "security.suspicious_activity"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class SecurityEvent:
    event_type: SecurityEventType
    severity: Severity
    client_key: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


SecurityListener = Callable[[SecurityEvent], None]


class SecurityEventLogger:
    def __init__(self) -> None:
        self._listeners: list[SecurityListener] = []

    def subscribe(self, listener: SecurityListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: SecurityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(
        self,
        event_type: SecurityEventType,
        severity: Severity = Severity.INFO,
        client_key: str | None = None,
        **details: Any,
    ) -> SecurityEvent:
        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            client_key=client_key,
            details=details,
        )
        logger.log(
            _LEVELS[severity],
            "%s client=%s %s",
            event_type.value,
            client_key or "-",
            details,
            extra={"event_type": event_type.value, "severity": severity.value},
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Security event listener failed for %s", event_type.value)
        return event


security_events = SecurityEventLogger()
