"""Test configuration and fixtures"""

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from chillfi_client.core.config import default_config
from chillfi_client.core.exceptions import AuthenticationError, ConnectionFailedError
from chillfi_client.core.store import LocalStore
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.rpc.correlator import RpcCorrelator
from chillfi_client.rpc.offline import OfflineRouter
from chillfi_client.transport.base import Transport
from chillfi_client.transport.messages import CallResponse


Responder = Callable[[dict[str, Any]], Any]


class FakeTransport(Transport):
    """
    In-memory call channel.

    Responders registered per event answer sent messages on the next loop
    iteration, echoing the requestId when the response has none.
    """

    def __init__(self) -> None:
        super().__init__()
        self.opened = False
        self.open_calls = 0
        self.close_calls = 0
        self.tokens: list[str] = []
        self.sent: list[tuple[str, Any]] = []
        self.responders: dict[str, Responder] = {}
        self.fail_opens = 0
        self.always_fail = False
        self.reject_auth = False

    @property
    def is_open(self) -> bool:
        return self.opened

    async def open(self, token: str) -> None:
        self.open_calls += 1
        self.tokens.append(token)
        if self.reject_auth:
            raise AuthenticationError("Authentication rejected by server")
        if self.always_fail:
            raise ConnectionFailedError("Connection refused")
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise ConnectionFailedError("Connection refused")
        self.opened = True

    async def send(self, event: str, data: Any) -> None:
        if not self.opened:
            raise ConnectionFailedError("WebSocket is not open")
        self.sent.append((event, data))

        responder = self.responders.get(event)
        if responder is None:
            return
        response = responder(data)
        if response is None:
            return
        if isinstance(response, dict) and isinstance(data, dict) and "requestId" in data:
            response = {"requestId": data["requestId"], **response}
        asyncio.get_running_loop().call_soon(self.reply, event, response)

    async def close(self) -> None:
        self.close_calls += 1
        self.opened = False

    def reply(self, event: str, data: Any) -> None:
        self._deliver(CallResponse(event=event, data=data))

    def drop(self, reason: Exception | None = None) -> None:
        """Simulate the server going away."""
        self.opened = False
        self._closed(reason)

    def sent_events(self) -> list[str]:
        return [event for event, _ in self.sent]


class FakeBulkClient:
    """
    Stand-in for the bulk channel.

    outcomes maps a file name to the results of its successive uploads:
    an exception instance is raised, a dict is returned. Files without
    scripted outcomes succeed. While gate is set to an unset Event,
    uploads wait on it.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, list[Any]] = {}
        self.uploads: list[tuple[str, dict[str, Any]]] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def upload(self, path: Path, metadata: dict[str, Any], on_progress=None) -> dict[str, Any]:
        self.uploads.append((path.name, metadata))
        if on_progress is not None:
            on_progress(0.5)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)

        scripted = self.outcomes.get(path.name)
        outcome = scripted.pop(0) if scripted else {
            "success": True,
            "filename": path.name,
            "songId": len(self.uploads),
        }
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True

    def uploaded_names(self) -> list[str]:
        return [name for name, _ in self.uploads]


class FakeSleep:
    """
    Records reconnection delays instead of waiting for them.

    While gate is set to an unset Event, each sleep waits on it.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Temporary directory for tests"""
    return tmp_path


@pytest.fixture
def store(tmp_path: Path):
    """LocalStore backed by a temporary database"""
    local_store = LocalStore(tmp_path / "test.db")
    yield local_store
    local_store.close()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def connection(transport: FakeTransport, fake_sleep: FakeSleep) -> ConnectionManager:
    """ConnectionManager over the fake transport with instant delays"""
    return ConnectionManager(
        transport,
        "test-token",
        reconnect_delay=5.0,
        max_reconnect_attempts=10,
        sleep=fake_sleep,
    )


@pytest.fixture
def bulk() -> FakeBulkClient:
    return FakeBulkClient()


@pytest.fixture
def router(store: LocalStore) -> OfflineRouter:
    return OfflineRouter(store)


@pytest.fixture
def correlator(connection: ConnectionManager, router: OfflineRouter) -> RpcCorrelator:
    return RpcCorrelator(connection, router=router, timeout=1.0, transfer_timeout=2.0)


@pytest.fixture
def config(tmp_path: Path):
    """Default configuration pointing at a local test server"""
    return default_config("http://localhost:3005", token="test-token", cache_dir=tmp_path / "cache")


@pytest.fixture
def sample_songs() -> list[dict[str, Any]]:
    """Songs as the server lists them"""
    return [
        {
            "id": 1,
            "title": "Blue Nile",
            "artist": "Aster Lane",
            "album": "Harbor Lights",
            "album_id": 10,
            "cover_art_url": "/covers/10.jpg",
        },
        {
            "id": 2,
            "title": "Paper Boats",
            "artist": "Aster Lane",
            "album": "Harbor Lights",
            "album_id": 10,
            "cover_art_url": "/covers/10.jpg",
        },
        {
            "id": 3,
            "title": "Midnight Tram",
            "artist": "Kiko Rains",
            "album": "City Loops",
            "album_id": 11,
            "cover_art_url": "/covers/11.jpg",
        },
    ]
