"""Pytest fixtures for multissh tests."""

import pytest

from multissh.config import ManagerSettings
from multissh.events import EventBus, EventKind
from multissh.models import SessionConfig
from multissh.session import SessionManager

from .mocks.ssh_mock import create_config


class EventRecorder:
    """Subscribes to every event kind and keeps them in order."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[EventKind, tuple]] = []
        for kind in EventKind:
            bus.subscribe(kind, self._recorder(kind))

    def _recorder(self, kind: EventKind):
        def record(*args) -> None:
            self.events.append((kind, args))

        return record

    def of(self, kind: EventKind) -> list[tuple]:
        return [args for k, args in self.events if k == kind]

    def kinds(self, session_id: str | None = None) -> list[EventKind]:
        return [k for k, args in self.events if session_id is None or session_id in args]


@pytest.fixture
def settings() -> ManagerSettings:
    """Provide settings with the documented defaults."""
    return ManagerSettings(keepalive_interval=0)


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the manager, in seconds."""
    return []


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def manager(settings: ManagerSettings, bus: EventBus, sleeps: list[float]) -> SessionManager:
    """Provide a session manager whose backoff returns immediately."""

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SessionManager(settings=settings, bus=bus, sleep=fake_sleep)


@pytest.fixture
def config() -> SessionConfig:
    return create_config()
