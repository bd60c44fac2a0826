from __future__ import annotations


class RelayError(Exception):
    """Base error carrying a machine-readable code sent back in ERROR frames."""

    code = "RELAY_ERROR"

    def __init__(self, detail: str = "", *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.detail = detail or self.code
        super().__init__(self.detail)


class InvalidHandshake(RelayError):
    """Missing or empty username in the HELLO frame. The connection is refused."""

    code = "INVALID_HANDSHAKE"


class BadPayload(RelayError):
    code = "BAD_PAYLOAD"


class StoreUnavailable(RelayError):
    """Backing medium could not be read or written, even after a reset."""

    code = "STORE_UNAVAILABLE"


__all__ = ["RelayError", "InvalidHandshake", "BadPayload", "StoreUnavailable"]
