from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

import websockets

from chatrelay.core import proto
from chatrelay.core.errors import BadPayload, InvalidHandshake, RelayError
from chatrelay.core.presence import Identity

if TYPE_CHECKING:
    from .runtime import Connection, ServerRuntime

log = logging.getLogger("chatrelay.server.handler")


class State(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ConnectionHandler:
    """Drives one client connection: HELLO, then MSG_SEND / HISTORY_FETCH until close.

    Disconnect cleanup runs in a finally block, so it happens on normal closure,
    transport errors, and task cancellation alike.
    """

    def __init__(self, runtime: "ServerRuntime", conn: "Connection") -> None:
        self.runtime = runtime
        self.conn = conn
        self.state = State.CONNECTING
        self.identity: Optional[Identity] = None

    @property
    def connection_id(self) -> Optional[str]:
        return self.identity.connection_id if self.identity else None

    async def run(self) -> None:
        try:
            identity = await self._handshake()
        except InvalidHandshake as exc:
            self.state = State.DISCONNECTED
            log.info("Rejected handshake from %s: %s", self.conn.remote, exc.detail)
            await self._reject(exc)
            return
        except websockets.ConnectionClosed:
            self.state = State.DISCONNECTED
            return

        self.identity = identity
        try:
            await self.runtime.admit(identity)
            self.state = State.ACTIVE
            async for raw in self.conn.websocket:
                await self._on_frame(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.state = State.DISCONNECTED
            await self.runtime.depart(identity)

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def _handshake(self) -> Identity:
        raw = await self.conn.websocket.recv()
        try:
            frame = proto.decode_frame(raw)
        except BadPayload as exc:
            raise InvalidHandshake(exc.detail) from exc
        if frame.type != proto.T_HELLO:
            raise InvalidHandshake(f"expected {proto.T_HELLO}, got {frame.type}")
        try:
            hello = proto.parse_payload(proto.HelloPayload, frame.payload)
        except BadPayload as exc:
            raise InvalidHandshake(exc.detail) from exc
        return Identity(username=hello.username, connection_id=hello.connection_id, connection=self.conn)

    async def _reject(self, exc: InvalidHandshake) -> None:
        try:
            await self._send_error(exc.code, exc.detail)
            await self.conn.close(1008, "invalid handshake")
        except websockets.ConnectionClosed:
            pass

    # ------------------------------------------------------------------
    # Active
    # ------------------------------------------------------------------

    async def _on_frame(self, raw: Any) -> None:
        try:
            frame = proto.decode_frame(raw)
            await self._dispatch(frame)
        except RelayError as exc:
            log.warning("%s from %s: %s", exc.code, self._who(), exc.detail)
            await self._send_error(exc.code, exc.detail)
        except websockets.ConnectionClosed:
            raise
        except Exception:
            log.exception("Unhandled error while handling frame from %s", self._who())
            await self._send_error("INTERNAL", "internal error")

    async def _dispatch(self, frame: proto.Frame) -> None:
        type_ = frame.type
        if type_ == proto.T_MSG_SEND:
            await self._handle_send(frame.payload)
        elif type_ == proto.T_HISTORY_FETCH:
            await self._handle_fetch(frame.payload)
        elif type_ == proto.T_HELLO:
            raise RelayError("already joined", code="UNKNOWN_TYPE")
        else:
            raise RelayError(f"unsupported type {type_}", code="UNKNOWN_TYPE")

    async def _handle_send(self, payload: Dict[str, Any]) -> None:
        sender = self._require_id()
        proto.parse_payload(proto.SendPayload, payload)
        body = dict(payload)
        body["from"] = sender
        await self.runtime.send_message(sender, body)

    async def _handle_fetch(self, payload: Dict[str, Any]) -> None:
        requester = self._require_id()
        req = proto.parse_payload(proto.FetchPayload, payload)
        messages = await self.runtime.fetch_history(requester, req.receiver)
        frame = proto.build_frame(
            proto.T_HISTORY_RESULT,
            self.runtime.server_id,
            requester,
            {"messages": [m.as_dict() for m in messages]},
        )
        await self.conn.send(frame)

    def _require_id(self) -> str:
        cid = self.connection_id
        if not cid:
            raise RelayError("connectionID required for messaging", code="NO_CONNECTION_ID")
        return cid

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _send_error(self, code: str, detail: str) -> None:
        payload = {"code": code, "detail": detail}
        target = self.connection_id or "*"
        await self.conn.send(proto.build_frame(proto.T_ERROR, self.runtime.server_id, target, payload))

    def _who(self) -> str:
        if self.identity is None:
            return self.conn.remote
        return f"{self.identity.username}/{self.identity.connection_id or '-'}"


__all__ = ["ConnectionHandler", "State"]
