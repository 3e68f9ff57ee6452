"""Shared fixtures for the auth test suite."""

import dataclasses

from auth.audit import SecurityEventLogger
from auth.config import AuthConfig


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> AuthConfig:
    return dataclasses.replace(AuthConfig(), **overrides)


class RecordingEvents(SecurityEventLogger):
    """Security event logger that keeps everything it emitted."""

    def __init__(self):
        super().__init__()
        self.events = []
        self.subscribe(self.events.append)

    def of_type(self, event_type):
        return [event for event in self.events if event.event_type is event_type]
