from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiosqlite
import orjson

from ..utils.canonical import pretty_bytes
from .errors import StoreUnavailable


"""
Message store
-------------
Per-conversation append-only message logs keyed by ConversationKey.

Contract used by the runtime:
- append(key, message)      creates the record when absent, appends, persists before returning
- query(key)                full ordered history, or None when no record exists (not an error)
- get_or_create(key)        history, materializing an empty record when absent

File-backed stores self-heal: when the medium is unreadable they reset it to an empty valid
state and retry the operation once. A second failure raises StoreUnavailable.
"""

log = logging.getLogger("chatrelay.store")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Message:
    from_: str
    message: str
    time: str

    def as_dict(self) -> Dict[str, str]:
        return {"from": self.from_, "message": self.message, "time": self.time}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(from_=data["from"], message=data["message"], time=data["time"])


class CorruptStore(ValueError):
    """Persisted state exists but does not have the expected shape."""


class MessageStore(ABC):
    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def append(self, key: str, message: Message) -> None: ...

    @abstractmethod
    async def query(self, key: str) -> Optional[List[Message]]: ...

    @abstractmethod
    async def get_or_create(self, key: str) -> List[Message]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryStore(MessageStore):
    """Process-local store; history is lost on exit."""

    def __init__(self) -> None:
        self._records: Dict[str, List[Message]] = {}

    async def append(self, key: str, message: Message) -> None:
        self._records.setdefault(key, []).append(message)

    async def query(self, key: str) -> Optional[List[Message]]:
        record = self._records.get(key)
        return None if record is None else list(record)

    async def get_or_create(self, key: str) -> List[Message]:
        return list(self._records.setdefault(key, []))


# ---------------------------------------------------------------------------
# Self-healing base
# ---------------------------------------------------------------------------

class _SelfHealingStore(MessageStore):
    @abstractmethod
    async def _reinitialize(self) -> None: ...

    def _is_corruption(self, exc: BaseException) -> bool:
        return isinstance(exc, (CorruptStore, OSError))

    def _is_backend_error(self, exc: BaseException) -> bool:
        return isinstance(exc, OSError)

    async def _healing(self, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except Exception as exc:
            if not self._is_corruption(exc):
                if self._is_backend_error(exc):
                    raise StoreUnavailable(f"{op} failed: {exc}") from exc
                raise
            log.warning("%s on %s failed (%s); reinitializing store", op, self, exc)

        try:
            await self._reinitialize()
            return await fn()
        except Exception as exc:
            if not (self._is_corruption(exc) or self._is_backend_error(exc)):
                raise
            raise StoreUnavailable(f"{op} failed after reinitializing: {exc}") from exc


# ---------------------------------------------------------------------------
# JSON document
# ---------------------------------------------------------------------------

def _empty_document() -> Dict[str, Any]:
    return {"users": [], "messages": []}


def _check_document(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise CorruptStore("document must be an object with a 'messages' list")
    for record in data["messages"]:
        if not isinstance(record, dict) or not isinstance(record.get("userToken"), str):
            raise CorruptStore("conversation record without userToken")
        msgs = record.get("messages")
        if not isinstance(msgs, list):
            raise CorruptStore(f"record {record['userToken']!r} has no message list")
        for m in msgs:
            if not isinstance(m, dict) or not all(isinstance(m.get(f), str) for f in ("from", "message", "time")):
                raise CorruptStore(f"malformed message in {record['userToken']!r}")
    data.setdefault("users", [])
    return data


class JsonFileStore(_SelfHealingStore):
    """Whole-document JSON file, rewritten atomically on every mutation.

    Layout: {"users": [], "messages": [{"userToken": key, "messages": [{from, message, time}]}]}
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        # one document holds every conversation, so all operations share a lock
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"JsonFileStore({str(self.path)!r})"

    async def open(self) -> None:
        async with self._lock:
            await self._healing("open", lambda: asyncio.to_thread(self._read))

    async def append(self, key: str, message: Message) -> None:
        async with self._lock:
            await self._healing("append", lambda: asyncio.to_thread(self._append_sync, key, message))

    async def query(self, key: str) -> Optional[List[Message]]:
        async with self._lock:
            return await self._healing("query", lambda: asyncio.to_thread(self._query_sync, key))

    async def get_or_create(self, key: str) -> List[Message]:
        async with self._lock:
            return await self._healing("get_or_create", lambda: asyncio.to_thread(self._get_or_create_sync, key))

    async def _reinitialize(self) -> None:
        await asyncio.to_thread(self._write, _empty_document())

    # --- blocking helpers, run in a worker thread ---

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            data = _empty_document()
            self._write(data)
            return data
        raw = self.path.read_bytes()
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as exc:
            raise CorruptStore(f"invalid json: {exc}") from exc
        return _check_document(data)

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(pretty_bytes(data))
            os.replace(tmp_path, self.path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()

    @staticmethod
    def _find(data: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
        for record in data["messages"]:
            if record["userToken"] == key:
                return record
        return None

    def _append_sync(self, key: str, message: Message) -> None:
        data = self._read()
        record = self._find(data, key)
        if record is None:
            data["messages"].append({"userToken": key, "messages": [message.as_dict()]})
        else:
            record["messages"].append(message.as_dict())
        self._write(data)

    def _query_sync(self, key: str) -> Optional[List[Message]]:
        record = self._find(self._read(), key)
        if record is None:
            return None
        return [Message.from_dict(m) for m in record["messages"]]

    def _get_or_create_sync(self, key: str) -> List[Message]:
        data = self._read()
        record = self._find(data, key)
        if record is None:
            data["messages"].append({"userToken": key, "messages": []})
            self._write(data)
            log.info("Conversation %s created", key)
            return []
        return [Message.from_dict(m) for m in record["messages"]]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations(
    conv_key   TEXT PRIMARY KEY,
    created_at INT  NOT NULL
);
CREATE TABLE IF NOT EXISTS messages(
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    conv_key  TEXT NOT NULL REFERENCES conversations(conv_key),
    sender    TEXT NOT NULL,
    body      TEXT NOT NULL,
    sent_time TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_conv ON messages(conv_key, id);
"""


class SqliteStore(_SelfHealingStore):
    """aiosqlite-backed store; one row per message, ordered by rowid."""

    def __init__(self, path: Path | str, *, timeout: float = 5.0) -> None:
        self.path = str(path)
        self.timeout = timeout
        self._db: Optional[aiosqlite.Connection] = None
        # a single connection serves every key and may be replaced by a reset
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"SqliteStore({self.path!r})"

    def _is_corruption(self, exc: BaseException) -> bool:
        if isinstance(exc, aiosqlite.OperationalError):
            # locking and similar transient errors must not wipe the database
            return str(exc).startswith("no such table")
        return isinstance(exc, aiosqlite.DatabaseError)

    def _is_backend_error(self, exc: BaseException) -> bool:
        return isinstance(exc, (aiosqlite.Error, OSError))

    async def open(self) -> None:
        async with self._lock:
            await self._healing("open", self._conn)

    async def close(self) -> None:
        async with self._lock:
            await self._disconnect()

    async def _disconnect(self) -> None:
        if self._db is not None:
            db, self._db = self._db, None
            await db.close()

    async def _connect(self) -> aiosqlite.Connection:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(self.path, timeout=self.timeout)
        try:
            await db.executescript(SCHEMA)
            await db.commit()
        except Exception:
            await db.close()
            raise
        return db

    async def _reinitialize(self) -> None:
        with contextlib.suppress(Exception):
            await self._disconnect()
        if self.path != ":memory:":
            for suffix in ("", "-journal", "-wal", "-shm"):
                with contextlib.suppress(FileNotFoundError):
                    os.remove(self.path + suffix)
        self._db = await self._connect()

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db = await self._connect()
        return self._db

    async def append(self, key: str, message: Message) -> None:
        async def _op() -> None:
            db = await self._conn()
            await db.execute(
                "INSERT OR IGNORE INTO conversations(conv_key, created_at) VALUES(?, ?)",
                (key, int(time.time())),
            )
            await db.execute(
                "INSERT INTO messages(conv_key, sender, body, sent_time) VALUES(?, ?, ?, ?)",
                (key, message.from_, message.message, message.time),
            )
            await db.commit()

        async with self._lock:
            await self._healing("append", _op)

    async def query(self, key: str) -> Optional[List[Message]]:
        async def _op() -> Optional[List[Message]]:
            db = await self._conn()
            cur = await db.execute("SELECT 1 FROM conversations WHERE conv_key = ?", (key,))
            if await cur.fetchone() is None:
                return None
            return await self._messages(db, key)

        async with self._lock:
            return await self._healing("query", _op)

    async def get_or_create(self, key: str) -> List[Message]:
        async def _op() -> List[Message]:
            db = await self._conn()
            cur = await db.execute(
                "INSERT OR IGNORE INTO conversations(conv_key, created_at) VALUES(?, ?)",
                (key, int(time.time())),
            )
            await db.commit()
            if cur.rowcount:
                log.info("Conversation %s created", key)
            return await self._messages(db, key)

        async with self._lock:
            return await self._healing("get_or_create", _op)

    @staticmethod
    async def _messages(db: aiosqlite.Connection, key: str) -> List[Message]:
        cur = await db.execute(
            "SELECT sender, body, sent_time FROM messages WHERE conv_key = ? ORDER BY id",
            (key,),
        )
        rows = await cur.fetchall()
        return [Message(from_=r[0], message=r[1], time=r[2]) for r in rows]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

DEFAULT_PATHS = {"json": "data.json", "sqlite": "relay.db"}


def open_store(config: Dict[str, Any] | None) -> MessageStore:
    """Build (not open) the store described by the `store:` config section."""

    cfg = config or {}
    backend = cfg.get("backend", "json")
    if backend == "memory":
        return MemoryStore()
    if backend not in DEFAULT_PATHS:
        raise ValueError(f"unknown store backend: {backend!r}")
    path = cfg.get("path") or DEFAULT_PATHS[backend]
    if backend == "json":
        return JsonFileStore(path)
    return SqliteStore(path)


__all__ = [
    "Message",
    "CorruptStore",
    "MessageStore",
    "MemoryStore",
    "JsonFileStore",
    "SqliteStore",
    "open_store",
]
