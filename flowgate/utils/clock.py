from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(start: datetime | None, end: datetime) -> int:
    """Milliseconds between ``start`` and ``end``; 0 when ``start`` is unknown."""
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))
