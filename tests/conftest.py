from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from presence_client.config import Settings as ClientSettings
from presence_common import protocol
from presence_server.config import Settings as ServerSettings


class FakeConnection:
    """Stands in for a ClientConnection: records what the registry does to it."""

    def __init__(self, user_id: str | None, log: list | None = None, fail: bool = False) -> None:
        self.user_id = user_id
        self.events: list[tuple[str, Any]] = []
        self.closed = False
        self.close_notified = False
        self.fail = fail
        self.log = log if log is not None else []

    def __repr__(self) -> str:
        return f"<FakeConnection {self.user_id!r} #{id(self):x}>"

    async def send_event(self, event: str, payload: Any = None) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.events.append((event, payload))
        self.log.append(("event", self, event, payload))

    async def close(self, notify: bool = False) -> None:
        self.closed = True
        self.close_notified = notify
        self.log.append(("close", self))

    def presence_updates(self) -> list[list[str]]:
        return [payload for event, payload in self.events if event == protocol.PRESENCE_UPDATE]


class StalledConnection(FakeConnection):
    """A recipient whose sends never complete."""

    async def send_event(self, event: str, payload: Any = None) -> None:
        await asyncio.sleep(3600)


@pytest.fixture
def server_settings(tmp_path) -> ServerSettings:
    return ServerSettings(
        SERVER_HOST="127.0.0.1",
        SERVER_PORT=0,
        DATABASE_PATH=tmp_path / "presence.db",
        HEARTBEAT_INTERVAL=0.05,
        HEARTBEAT_TIMEOUT=1.0,
        CONNECT_TIMEOUT=2.0,
        SEND_TIMEOUT=1.0,
        ALLOWED_ORIGINS=["http://localhost:5173"],
    )


@pytest.fixture
def client_settings() -> Callable[..., ClientSettings]:
    def _make(port: int, **overrides: Any) -> ClientSettings:
        values: dict[str, Any] = {
            "SERVER_HOST": "127.0.0.1",
            "SERVER_PORT": port,
            "CONNECT_TIMEOUT": 2.0,
            "RECONNECT_ATTEMPTS": 3,
            "RECONNECT_DELAY": 0.05,
            "RECONNECT_DELAY_MAX": 0.2,
        }
        values.update(overrides)
        return ClientSettings(**values)

    return _make


async def eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition was not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return eventually
