from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from chatrelay.core import proto
from chatrelay.core.errors import BadPayload
from chatrelay.core.session import is_uuid_v4, issue_session

log = logging.getLogger("chatrelay.cmd.client")


class ClientApp:
    def __init__(self, server_url: str, username: str, connection_id: Optional[str] = None) -> None:
        self.server_url = server_url
        if connection_id is None:
            session = issue_session(username)
            connection_id = session["connectionID"]
        elif not is_uuid_v4(connection_id):
            log.warning("connectionID %s is not a UUID; routing still works if it stays stable", connection_id)
        self.username = username
        self.connection_id = connection_id

        self.ws: Optional[ClientConnection] = None
        self.users: List[Dict[str, Any]] = []
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(proto.T_HELLO, {"username": self.username, "connectionID": self.connection_id})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"Connected as {self.username} ({self.connection_id}).")
        print("Commands: /list, /tell <id> <msg>, /history <id>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split(maxsplit=2)
        cmd = parts[0]
        if cmd == "/list":
            self._print_users()
        elif cmd == "/tell" and len(parts) == 3:
            target, text = parts[1], parts[2]
            payload = {"to": target, "message": text, "time": datetime.now().strftime("%H:%M")}
            await self._send_frame(proto.T_MSG_SEND, payload, to=target)
        elif cmd == "/history" and len(parts) == 2:
            await self._send_frame(proto.T_HISTORY_FETCH, {"receiver": parts[1]})
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = proto.decode_frame(raw)
                except BadPayload:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            print("Disconnected from relay.")
            self.stop_event.set()

    def _handle_incoming(self, frame: proto.Frame) -> None:
        p = frame.payload
        if frame.type == proto.T_PRESENCE_UPDATE:
            self.users = list(p.get("users") or [])
            self._print_users()
        elif frame.type == proto.T_USER_DEPARTED:
            print(f"* {p.get('connectionID')} went away")
        elif frame.type == proto.T_MSG_DELIVER:
            print(f"[{p.get('time')}] {self._name_of(p.get('from'))}: {p.get('message')}")
        elif frame.type == proto.T_HISTORY_RESULT:
            messages = p.get("messages") or []
            if not messages:
                print("(no messages yet)")
            for m in messages:
                print(f"  [{m.get('time')}] {self._name_of(m.get('from'))}: {m.get('message')}")
        elif frame.type == proto.T_ERROR:
            print(f"! {p.get('code')}: {p.get('detail')}")
        else:
            log.debug("Ignored frame %s", frame.type)

    def _print_users(self) -> None:
        print("Online:")
        for u in self.users:
            me = " (you)" if u.get("connectionID") == self.connection_id else ""
            print(f"  {u.get('username')}  {u.get('connectionID')}{me}")

    def _name_of(self, connection_id: Optional[str]) -> str:
        for u in self.users:
            if u.get("connectionID") == connection_id:
                return u.get("username") or str(connection_id)
        return str(connection_id)

    async def _send_frame(self, type_: str, payload: Dict[str, Any], *, to: str = "relay") -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame(proto.build_frame(type_, self.connection_id, to, payload)))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Terminal client for the direct-message relay")
    parser.add_argument("--server", default="ws://127.0.0.1:3000", help="Relay WebSocket URL")
    parser.add_argument("--username", required=True)
    parser.add_argument("--id", dest="connection_id", help="Reuse a connectionID instead of issuing a new one")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.username, args.connection_id)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(app.run())


if __name__ == "__main__":
    main()
