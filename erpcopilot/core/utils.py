"""
Small shared utilities: timing, the engine clock, and call deadlines.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generator
from zoneinfo import ZoneInfo

from erpcopilot.core.config import get_settings

Clock = Callable[[], datetime]


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def make_clock(tz_name: str | None = None) -> Clock:
    """Return a clock pinned to one timezone.

    Every "now" in the engine (date-text parsing, comparison periods, insight
    ageing, validator period checks) comes from a single clock so that month
    and year boundaries are computed consistently.
    """
    tz = ZoneInfo(tz_name or get_settings().timezone)

    def _now() -> datetime:
        return datetime.now(tz)

    return _now


def fixed_clock(moment: datetime) -> Clock:
    """Clock that always returns *moment* (tests, replays)."""
    return lambda: moment


class DeadlineExceeded(TimeoutError):
    """Raised when a call runs past its deadline or is cancelled."""


@dataclass(frozen=True)
class Deadline:
    """Caller-supplied time budget and cancellation token for one call."""
    expires_at: float | None = None
    cancel_event: threading.Event | None = None

    @classmethod
    def after(cls, seconds: float | None, cancel_event: threading.Event | None = None) -> "Deadline":
        expires = time.monotonic() + seconds if seconds is not None else None
        return cls(expires_at=expires, cancel_event=cancel_event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def remaining(self) -> float | None:
        """Seconds left, or ``None`` when the deadline is unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def check(self) -> float | None:
        """Raise if cancelled or expired; otherwise return the remaining time."""
        if self.cancelled:
            raise DeadlineExceeded("Query cancelled by caller")
        left = self.remaining()
        if left is not None and left <= 0:
            raise DeadlineExceeded("Query deadline exceeded")
        return left


def format_money(value: float) -> str:
    """``1234.5 -> "$1,234.50"``; whole amounts drop the decimals."""
    value = float(value or 0)
    if value == int(value):
        return f"${value:,.0f}"
    return f"${value:,.2f}"


def format_compact(value: float) -> str:
    """Short money figure for headlines: ``$1.2M``, ``$45.3K``, ``$950``."""
    value = float(value or 0)
    if abs(value) >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    if abs(value) >= 1_000:
        return f"${value / 1_000:.1f}K"
    return f"${value:,.0f}"
