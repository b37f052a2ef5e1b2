from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from zoneinfo import ZoneInfo

DEFAULT_TZ_NAME = "Asia/Kolkata"

_NowCallable = Callable[[], dt.datetime]


def _system_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


_active_now: _NowCallable = _system_now


def now(tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    """Current wall-clock time, honouring any active ``travel``."""

    current = _active_now()
    if tz:
        if current.tzinfo is None:
            current = current.replace(tzinfo=tz)
        else:
            current = current.astimezone(tz)
    return current


def utc_now() -> dt.datetime:
    return now(dt.timezone.utc)


@contextlib.contextmanager
def travel(frozen: dt.datetime | str) -> Iterator[None]:
    """Pin ``now()`` at ``frozen`` (datetime or ISO string, naive read as UTC)."""

    target = _coerce_ts(frozen)
    global _active_now
    prev = _active_now
    _active_now = lambda: target  # noqa: E731
    try:
        yield
    finally:
        _active_now = prev


def install_now_provider(fn: Optional[_NowCallable]) -> None:
    """Swap the wall-clock source; ``None`` restores the system clock."""

    global _active_now
    _active_now = fn or _system_now


def _coerce_ts(value: dt.datetime | str) -> dt.datetime:
    ts = value if isinstance(value, dt.datetime) else dt.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts


def ist_tz() -> dt.tzinfo:
    try:
        return ZoneInfo(DEFAULT_TZ_NAME)
    except Exception:  # pragma: no cover - tzdata missing
        return dt.timezone(dt.timedelta(hours=5, minutes=30))


class MarketClock:
    """Exchange-local clock with an async ``wait_until`` used by the scheduler."""

    def __init__(self, tz: Optional[dt.tzinfo] = None, *, max_sleep: float = 60.0):
        self._tz = tz or ist_tz()
        self._max_sleep = max(max_sleep, 0.01)

    @property
    def tz(self) -> dt.tzinfo:
        return self._tz

    def now(self) -> dt.datetime:
        return now(self._tz)

    def today(self) -> dt.date:
        return self.now().date()

    def at(self, day: dt.date, when: dt.time) -> dt.datetime:
        return dt.datetime.combine(day, when, tzinfo=self._tz)

    async def wait_until(self, when: dt.datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=self._tz)
        when = when.astimezone(self._tz)
        while True:
            remaining = (when - self.now()).total_seconds()
            if remaining <= 0:
                break
            # short hops so a travel()/suspend does not oversleep
            await asyncio.sleep(min(remaining, self._max_sleep))


@dataclass(frozen=True)
class MarketHours:
    """Weekday trading window used to gate the heartbeat."""

    open_time: dt.time
    close_time: dt.time

    def is_open(self, ts: dt.datetime) -> bool:
        if ts.weekday() >= 5:
            return False
        return self.open_time <= ts.time() <= self.close_time


__all__ = ["MarketClock", "MarketHours", "install_now_provider", "ist_tz", "now", "travel", "utc_now"]
