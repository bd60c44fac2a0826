from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import orjson
import pytest
import pytest_asyncio
import websockets

from chatrelay.core import proto
from chatrelay.core.store import MemoryStore
from chatrelay.server.handler import ConnectionHandler
from chatrelay.server.runtime import Connection, ServerRuntime

_HANG_UP = object()


class FakeWebSocket:
    """In-process stand-in for a server-side WebSocket connection."""

    def __init__(self, remote=("127.0.0.1", 50000)) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.remote_address = remote

    # --- driven by tests ---

    def feed(self, type_: str, payload: Dict[str, Any]) -> None:
        self.inbox.put_nowait(proto.encode_frame(proto.build_frame(type_, "client", "relay", payload)))

    def feed_raw(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def hang_up(self) -> None:
        self.inbox.put_nowait(_HANG_UP)

    def frames(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f["type"] == type_]

    # --- used by the relay ---

    async def recv(self) -> str:
        item = await self.inbox.get()
        if item is _HANG_UP:
            self.closed = True
            raise websockets.ConnectionClosedOK(None, None)
        return item

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        try:
            return await self.recv()
        except websockets.ConnectionClosedOK:
            raise StopAsyncIteration

    async def send(self, text: str) -> None:
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        self.sent.append(orjson.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code


class FakeClient:
    def __init__(self, runtime: ServerRuntime, port: int) -> None:
        self.ws = FakeWebSocket(remote=("127.0.0.1", port))
        self.conn = Connection(websocket=self.ws, remote=f"127.0.0.1:{port}")
        self.handler = ConnectionHandler(runtime, self.conn)
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.task = asyncio.create_task(self.handler.run())

    async def disconnect(self) -> None:
        self.ws.hang_up()
        assert self.task is not None
        await self.task


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def runtime() -> ServerRuntime:
    return ServerRuntime({"server_id": "relay-test", "listen": "127.0.0.1:0"}, store=MemoryStore())


@pytest_asyncio.fixture
async def make_client(runtime):
    """Factory for unstarted FakeClients; unfinished ones are hung up at teardown."""

    clients: List[FakeClient] = []

    def _make() -> FakeClient:
        client = FakeClient(runtime, 50000 + len(clients))
        clients.append(client)
        return client

    yield _make

    for client in clients:
        if client.task is not None and not client.task.done():
            client.ws.hang_up()
            await asyncio.wait_for(client.task, 2)


@pytest.fixture
def connect(make_client):
    """Factory: await connect(username, connection_id) -> admitted FakeClient."""

    async def _connect(username: str, connection_id: Optional[str] = None) -> FakeClient:
        client = make_client()
        payload: Dict[str, Any] = {"username": username}
        if connection_id is not None:
            payload["connectionID"] = connection_id
        client.ws.feed(proto.T_HELLO, payload)
        client.start()
        await wait_until(lambda: client.ws.frames(proto.T_PRESENCE_UPDATE))
        return client

    return _connect


@pytest.fixture
def wait():
    return wait_until
