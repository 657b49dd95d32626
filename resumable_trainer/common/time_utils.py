from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ms() -> int:
    """Wall-clock milliseconds, the unit checkpoint metadata is stamped in."""
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def age_minutes(timestamp_ms: int | None, *, now: int | None = None) -> int:
    if not timestamp_ms:
        return 0
    current = now if now is not None else now_ms()
    return max(0, (current - int(timestamp_ms)) // 60000)
