from __future__ import annotations

KEY_SEPARATOR = "_"


def derive_key(id_a: str, id_b: str) -> str:
    """Order-independent conversation key for a pair of connection ids.

    derive_key(a, b) == derive_key(b, a). Equal ids give a self-key ("a_a").
    """

    return KEY_SEPARATOR.join(sorted((id_a, id_b)))


__all__ = ["KEY_SEPARATOR", "derive_key"]
