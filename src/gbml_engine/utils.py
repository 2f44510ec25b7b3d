"""Small helpers shared across engine modules."""
from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_base36(num: int) -> str:
    """Convert a non-negative integer to a base36 string."""
    chars = "0123456789abcdefghijklmnopqrstuvwxyz"
    if num == 0:
        return "0"
    result = []
    while num:
        num, remainder = divmod(num, 36)
        result.append(chars[remainder])
    return "".join(reversed(result))


def generate_id(prefix: str) -> str:
    """Generate a sortable record id: <prefix>_<base36 ms timestamp>_<random>."""
    timestamp = int(time.time() * 1000)
    return f"{prefix}_{to_base36(timestamp)}_{secrets.token_hex(4)}"
