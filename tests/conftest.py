"""Pytest configuration and shared fixtures."""

import json
from unittest.mock import MagicMock

import pytest

from desk_relay.registry import ConnectionRegistry
from desk_relay.signaling import SignalingRouter


class FakeTransport:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self):
        self.sent = []
        self.open = True
        self.closed_with = None

    @property
    def is_open(self):
        return self.open

    async def send(self, data):
        if not self.open:
            raise ConnectionError("closed")
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        self.open = False
        self.closed_with = (code, reason)

    def messages(self):
        """Decoded JSON messages, in send order."""
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def types(self):
        return [m["type"] for m in self.messages()]

    def frames(self):
        return [m for m in self.sent if isinstance(m, bytes)]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def injector():
    """Input injector double whose calls all succeed."""
    mock = MagicMock()
    for name in ("move_to", "click", "button_down", "button_up", "scroll", "key_tap", "type_text"):
        getattr(mock, name).return_value = True
    mock.screen_dimensions.return_value = (1920, 1080)
    return mock


@pytest.fixture
def router(registry, injector):
    return SignalingRouter(registry, injector=injector, screen_size=lambda: (1920, 1080))


@pytest.fixture
def connect(registry):
    """Factory: admit a new peer with a fake transport."""

    def _connect(address="192.168.1.20", port=50000):
        return registry.connect(FakeTransport(), (address, port))

    return _connect
