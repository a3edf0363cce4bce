from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from qrdesk.client.http_client import ClinicHttpClient
from qrdesk.client.room_channel import RoomChannel
from qrdesk.config import RoomSettings, Settings
from qrdesk.context import HandoffCache, RegistrationContext
from qrdesk.main import create_app
from qrdesk.server.hub import Hub
from qrdesk.state import ChannelEvent, decode_message, encode_message


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class LoopbackSocket:
    """Client-side socket wired straight into ``Hub.dispatch``."""

    def __init__(self, hub: Hub, *, drop_joins: int = 0) -> None:
        self.hub = hub
        self.drop_joins = drop_joins
        self.sent: List[tuple[str, dict]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()
        self.conn = hub.register(self)

    async def send_text(self, data: str) -> None:
        await self._inbox.put(data)

    async def send(self, message: str) -> None:
        event, data = decode_message(message)
        self.sent.append((event, data))
        if event == ChannelEvent.JOIN_ROOM.value and self.drop_joins > 0:
            self.drop_joins -= 1
            return
        await self.hub.dispatch(self.conn, event, data)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub.unregister(self.conn)
        await self._inbox.put(None)

    def sent_events(self, event: ChannelEvent) -> List[dict]:
        return [data for name, data in self.sent if name == event.value]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ScriptedSocket:
    """Client-side socket driven by the test; records what the channel sends."""

    def __init__(self) -> None:
        self.sent: List[tuple[str, dict]] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(decode_message(message))

    async def close(self) -> None:
        self.closed = True
        await self._inbox.put(None)

    async def push(self, event: ChannelEvent, data: dict) -> None:
        await self._inbox.put(encode_message(event, data))

    async def hang_up(self) -> None:
        await self._inbox.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        handoff_cache_dir=tmp_path / "handoff",
        log_directory=tmp_path / "logs",
        rooms=RoomSettings(
            join_retry_delay_seconds=0.05,
            join_retry_max_delay_seconds=0.2,
            join_max_attempts=3,
            setup_timeout_seconds=0.5,
        ),
    )


@pytest.fixture
def app(settings, clock):
    return create_app(settings, clock=clock)


@pytest.fixture
def desk(app):
    return app.state.desk


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def staff_headers(client) -> dict:
    response = client.post("/api/auth/login", json={"username": "reception", "password": "reception"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}


@pytest.fixture
async def http(app, settings):
    api = ClinicHttpClient(settings, transport=httpx.ASGITransport(app=app))
    yield api
    await api.aclose()


@pytest.fixture
async def staff_http(app, settings):
    api = ClinicHttpClient(settings, transport=httpx.ASGITransport(app=app))
    await api.login("reception", "reception")
    yield api
    await api.aclose()


@pytest.fixture
def context() -> RegistrationContext:
    return RegistrationContext()


@pytest.fixture
def handoff(settings) -> HandoffCache:
    return HandoffCache(settings.handoff_cache_dir)


@pytest.fixture
def sockets() -> List[LoopbackSocket]:
    return []


@pytest.fixture
def loopback(desk, sockets) -> Callable[..., Callable]:
    """Builds connectors that attach channels to the in-process hub."""

    def make(*, drop_joins: int = 0, failures: int = 0):
        remaining = {"failures": failures}

        async def connector(uri: str) -> LoopbackSocket:
            if remaining["failures"] > 0:
                remaining["failures"] -= 1
                raise OSError("connection refused")
            socket = LoopbackSocket(desk.hub, drop_joins=drop_joins)
            sockets.append(socket)
            return socket

        return connector

    return make


@pytest.fixture
async def channel_factory(settings, loopback):
    channels: List[RoomChannel] = []

    def make(**kwargs) -> RoomChannel:
        channel = RoomChannel(settings, connector=loopback(**kwargs))
        channels.append(channel)
        return channel

    yield make
    for channel in channels:
        await channel.disconnect()


@pytest.fixture
async def scripted_channel(settings):
    """Factory of (RoomChannel, ScriptedSocket) pairs."""
    channels: List[RoomChannel] = []

    def make() -> tuple[RoomChannel, ScriptedSocket]:
        socket = ScriptedSocket()

        async def connector(uri: str) -> ScriptedSocket:
            return socket

        channel = RoomChannel(settings, connector=connector)
        channels.append(channel)
        return channel, socket

    yield make
    for channel in channels:
        await channel.disconnect()


@pytest.fixture
def eventually():
    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.01)

    return wait
