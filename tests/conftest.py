"""Shared fixtures for CallHub tests."""

import pytest

from callhub.media import MediaControl
from callhub.relay import SignalRelay
from callhub.room import RoomRegistry
from callhub.screenshare import ScreenShareNegotiator


class FakeWebSocket:
    """Collects frames sent with send_json."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == message_type]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def relay(registry):
    return SignalRelay(registry)


@pytest.fixture
def media(registry):
    return MediaControl(registry)


@pytest.fixture
def negotiator(registry):
    return ScreenShareNegotiator(registry)


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
async def call(registry):
    """A room "r1" with an admin and two users; returns (ids, sockets)."""
    sockets = {name: FakeWebSocket() for name in ("admin", "ann", "bob")}
    await registry.join("admin", sockets["admin"], "r1", "Host", "admin")
    await registry.join("ann", sockets["ann"], "r1", "Ann", "user")
    await registry.join("bob", sockets["bob"], "r1", "Bob", "user")
    for ws in sockets.values():
        ws.clear()
    return sockets
