from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


"""
Presence registry
-----------------
Ordered list of the identities currently connected to this relay.

  • add() never deduplicates: two live connections may announce the same connectionID
    and both stay visible until each one disconnects.
  • remove() drops the entry owned by one live connection; remove_id() drops every entry
    for an id and is idempotent.
  • No locking lives here. Every method runs without awaiting, so callers on the event
    loop observe mutations atomically; the runtime is the only writer.
"""


log = logging.getLogger("chatrelay.presence")


@dataclass(slots=True)
class Identity:
    username: str
    connection_id: Optional[str] = None
    connection: Any = field(default=None, repr=False, compare=False)

    def as_dict(self) -> Dict[str, Any]:
        return {"username": self.username, "connectionID": self.connection_id}


class PresenceRegistry:
    """Currently connected identities, in connect order."""

    def __init__(self) -> None:
        self._entries: List[Identity] = []

    def add(self, identity: Identity) -> None:
        if identity.connection_id is not None and identity.connection_id in self:
            log.debug("Duplicate connectionID admitted: %s", identity.connection_id)
        self._entries.append(identity)

    def remove(self, connection: Any) -> Optional[Identity]:
        """Remove the entry registered for one live connection handle."""
        for i, entry in enumerate(self._entries):
            if entry.connection is connection:
                return self._entries.pop(i)
        return None

    def remove_id(self, connection_id: str) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.connection_id != connection_id]
        return before - len(self._entries)

    def snapshot(self) -> List[Identity]:
        return list(self._entries)

    def connections_for(self, connection_id: str) -> List[Any]:
        return [e.connection for e in self._entries if e.connection_id == connection_id and e.connection is not None]

    def all_connections(self) -> List[Any]:
        return [e.connection for e in self._entries if e.connection is not None]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: object) -> bool:
        return any(e.connection_id == connection_id for e in self._entries)


def presence_payload(identities: List[Identity]) -> Dict[str, Any]:
    return {"users": [i.as_dict() for i in identities]}


__all__ = ["Identity", "PresenceRegistry", "presence_payload"]
