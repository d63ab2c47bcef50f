"""Timestamp helpers shared by the wire protocols."""

import time
from datetime import datetime, timezone


def now_ms() -> int:
    """Return wall-clock milliseconds since the epoch (wire ``timestamp`` field)."""
    return int(time.time() * 1000)


def now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def iso_from_epoch(seconds: float | None) -> str | None:
    """Convert epoch seconds to an ISO 8601 UTC string, passing ``None`` through."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=0).isoformat()
