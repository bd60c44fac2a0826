from __future__ import annotations

import time
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utils.canonical import canonical_bytes
from .errors import BadPayload


# ---------------------------------------------------------------------------
# Frame types
# ---------------------------------------------------------------------------

# client -> server
T_HELLO = "HELLO"
T_MSG_SEND = "MSG_SEND"
T_HISTORY_FETCH = "HISTORY_FETCH"

# server -> client
T_PRESENCE_UPDATE = "PRESENCE_UPDATE"
T_USER_DEPARTED = "USER_DEPARTED"
T_MSG_DELIVER = "MSG_DELIVER"
T_HISTORY_RESULT = "HISTORY_RESULT"
T_ERROR = "ERROR"

ERROR_CODES = {
    "INVALID_HANDSHAKE",
    "BAD_PAYLOAD",
    "UNKNOWN_TYPE",
    "NO_CONNECTION_ID",
    "STORE_UNAVAILABLE",
    "INTERNAL",
}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """JSON frame carried over the WebSocket in both directions."""

    type: str
    from_: str = Field(default="", alias="from")
    to: str = ""
    ts: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


class HelloPayload(BaseModel):
    username: str
    connection_id: Optional[str] = Field(default=None, alias="connectionID")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username")
    @classmethod
    def _username_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("username must be non-empty")
        return value

    @field_validator("connection_id")
    @classmethod
    def _blank_id_is_absent(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class SendPayload(BaseModel):
    to: str = Field(min_length=1)
    message: str
    time: str

    # extra client fields travel with the delivery unmodified
    model_config = ConfigDict(extra="allow")


class FetchPayload(BaseModel):
    receiver: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def encode_frame(frame: Union[Frame, Dict[str, Any]]) -> str:
    data = frame.model_dump(by_alias=True) if isinstance(frame, Frame) else frame
    return canonical_bytes(data).decode("utf-8")


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """Parse one wire frame. Raises BadPayload on malformed input."""

    try:
        obj = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise BadPayload(f"invalid json: {exc}") from exc
    if not isinstance(obj, dict):
        raise BadPayload("frame must be an object")
    try:
        return Frame.model_validate(obj)
    except ValidationError as exc:
        raise BadPayload(_first_error(exc)) from exc


def parse_payload(model: type[BaseModel], payload: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise BadPayload(_first_error(exc)) from exc


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


__all__ = [
    "T_HELLO",
    "T_MSG_SEND",
    "T_HISTORY_FETCH",
    "T_PRESENCE_UPDATE",
    "T_USER_DEPARTED",
    "T_MSG_DELIVER",
    "T_HISTORY_RESULT",
    "T_ERROR",
    "ERROR_CODES",
    "Frame",
    "HelloPayload",
    "SendPayload",
    "FetchPayload",
    "now_ms",
    "build_frame",
    "encode_frame",
    "decode_frame",
    "parse_payload",
]
