"""Clock helpers for job timestamps, durations and webhook headers."""

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now_iso() -> str:
    """Millisecond ISO 8601 with a Z suffix, e.g. 2025-01-15T12:00:00.000Z."""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def elapsed_ms(started: datetime, finished: Optional[datetime] = None) -> int:
    """Whole milliseconds between two timestamps, never negative."""
    end = as_utc(finished) if finished is not None else utc_now()
    return max(0, int((end - as_utc(started)).total_seconds() * 1000))


def ms_since(started: float) -> int:
    """Milliseconds since a time.perf_counter() reading."""
    return int((time.perf_counter() - started) * 1000)
