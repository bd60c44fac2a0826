from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection

from chatrelay.core import proto
from chatrelay.core.conversation import derive_key
from chatrelay.core.presence import Identity, PresenceRegistry, presence_payload
from chatrelay.core.store import Message, MessageStore, open_store

from .handler import ConnectionHandler

log = logging.getLogger("chatrelay.server.runtime")


@dataclass(slots=True, eq=False)
class Connection:
    websocket: Any
    remote: str = "?"
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code, reason)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, List[Any]] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ServerRuntime:
    """Relay server: owns presence and the message store, routes frames between connections."""

    def __init__(self, config: Dict[str, Any], store: Optional[MessageStore] = None) -> None:
        self.cfg = config
        self.server_id = config.get("server_id") or f"relay-{socket.gethostname()}"
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "0.0.0.0:3000"))

        self.registry = PresenceRegistry()
        self.store = store if store is not None else open_store(config.get("store"))
        self._key_locks = KeyedLock()

        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        self._ws_server = await websockets.serve(self._handle_connection, self.listen_host, self.listen_port)
        log.info("Relay %s listening on ws://%s:%d using %r", self.server_id, self.listen_host, self.bound_port, self.store)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.store.close()

    @property
    def bound_port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return self.listen_port

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket, remote=self._fmt_remote(websocket))
        log.debug("Accepted connection from %s", conn.remote)
        await ConnectionHandler(self, conn).run()

    async def admit(self, identity: Identity) -> None:
        self.registry.add(identity)
        users = self.registry.snapshot()
        log.info("User %s (%s) connected; %d online", identity.username, identity.connection_id, len(users))
        await self.broadcast(proto.build_frame(proto.T_PRESENCE_UPDATE, self.server_id, "*", presence_payload(users)))

    async def depart(self, identity: Identity) -> None:
        if self.registry.remove(identity.connection) is None:
            return
        users = self.registry.snapshot()
        log.info("User %s (%s) disconnected; %d online", identity.username, identity.connection_id, len(users))
        await self.broadcast(proto.build_frame(proto.T_PRESENCE_UPDATE, self.server_id, "*", presence_payload(users)))
        await self.broadcast(
            proto.build_frame(proto.T_USER_DEPARTED, self.server_id, "*", {"connectionID": identity.connection_id})
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(self, sender_id: str, payload: Dict[str, Any]) -> int:
        """Persist a direct message, then push it to the recipient if connected.

        Returns the number of connections the message was delivered to.
        """
        target = payload["to"]
        key = derive_key(sender_id, target)
        message = Message(from_=sender_id, message=payload["message"], time=payload["time"])
        async with self._key_locks.hold(key):
            await self.store.append(key, message)

        delivered = await self.push_to(target, proto.build_frame(proto.T_MSG_DELIVER, self.server_id, target, payload))
        if not delivered:
            log.info("Recipient %s unreachable; message kept in %s", target, key)
        return delivered

    async def fetch_history(self, requester_id: str, receiver: str) -> List[Message]:
        key = derive_key(requester_id, receiver)
        async with self._key_locks.hold(key):
            return await self.store.get_or_create(key)

    # ------------------------------------------------------------------
    # Push primitives
    # ------------------------------------------------------------------

    async def push_to(self, connection_id: str, frame: Dict[str, Any]) -> int:
        sent = 0
        for conn in self.registry.connections_for(connection_id):
            if await self._safe_send(conn, frame):
                sent += 1
        return sent

    async def broadcast(self, frame: Dict[str, Any]) -> int:
        sent = 0
        for conn in self.registry.all_connections():
            if await self._safe_send(conn, frame):
                sent += 1
        return sent

    async def _safe_send(self, conn: Connection, frame: Dict[str, Any]) -> bool:
        try:
            await conn.send(frame)
            return True
        except websockets.ConnectionClosed:
            log.debug("Skipped %s to closed connection %s", frame.get("type"), conn.remote)
        except Exception:
            log.exception("Failed to send %s to %s", frame.get("type"), conn.remote)
        return False

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["Connection", "KeyedLock", "ServerRuntime"]
