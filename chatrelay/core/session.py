from __future__ import annotations

import uuid
from typing import Dict


def issue_session(username: str) -> Dict[str, str]:
    """Mint a session for a username: {"username", "connectionID"}.

    The relay never validates the id; clients present it in HELLO as their routing
    address, so it must stay the same for the whole session.
    """

    if not username or not username.strip():
        raise ValueError("username is required")
    return {"username": username, "connectionID": str(uuid.uuid4())}


def is_uuid_v4(value: str) -> bool:
    try:
        return uuid.UUID(str(value)).version == 4
    except ValueError:
        return False


__all__ = ["issue_session", "is_uuid_v4"]
