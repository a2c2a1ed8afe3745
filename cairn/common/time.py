"""Clock helpers shared by storage defaults and services."""

from __future__ import annotations

import datetime as dt
import typing as typ

type Clock = typ.Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    """Return the current time as an aware UTC datetime."""
    return dt.datetime.now(dt.UTC)


def elapsed_ms(started: float, finished: float) -> int:
    """Convert two ``time.perf_counter`` readings into whole milliseconds."""
    return max(0, round((finished - started) * 1000))
