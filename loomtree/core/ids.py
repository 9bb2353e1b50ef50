"""Short, collision-resistant identifiers for nodes."""

import secrets
import time

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def create_id() -> str:
    """Millisecond timestamp plus 8 random base36 chars, e.g. ``lz3k9q1c4f7x2m0a``."""
    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    return f"{_base36(time.time_ns() // 1_000_000)}{random_part}"


def edge_id(source_id: str, target_id: str) -> str:
    """Edge ids are derived from the parent/child pair."""
    return f"e-{source_id}-{target_id}"
