from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from condor.clock import MarketClock
from condor.logging_utils import get_logger

LOG = get_logger("Scheduler")

Callback = Callable[[], Awaitable[None]]
ErrorHook = Callable[[str, BaseException], None]


@dataclass
class _Trigger:
    name: str
    group: str
    task: asyncio.Task


def next_occurrence(now: dt.datetime, at: dt.time) -> dt.datetime:
    """Today at ``at`` if still ahead of ``now``, otherwise tomorrow."""

    candidate = dt.datetime.combine(now.date(), at, tzinfo=now.tzinfo)
    if candidate <= now:
        candidate += dt.timedelta(days=1)
    return candidate


class DailyScheduler:
    """
    Wall-clock trigger registry.

    Registering a name that already exists replaces the old trigger, so
    re-arming never doubles a firing. A failing callback is logged and
    reported through ``on_error``; the other triggers keep running.
    """

    def __init__(self, clock: MarketClock, *, on_error: Optional[ErrorHook] = None):
        self._clock = clock
        self._on_error = on_error
        self._triggers: Dict[str, _Trigger] = {}

    def names(self, group: Optional[str] = None) -> List[str]:
        return sorted(name for name, trig in self._triggers.items() if group is None or trig.group == group)

    def register_daily(self, name: str, at: dt.time, callback: Callback, *, group: str = "daily") -> None:
        self._register(name, group, self._run_daily(name, at, callback))

    def register_once(self, name: str, at: dt.time, callback: Callback, *, group: str = "once") -> bool:
        """Fire once today at ``at``. Returns False (nothing armed) if that time has passed."""

        when = dt.datetime.combine(self._clock.today(), at, tzinfo=self._clock.tz)
        if when <= self._clock.now():
            self.cancel(name)
            LOG.log_event(20, "trigger_skipped_past", name=name, at=at.isoformat())
            return False
        self._register(name, group, self._run_once(name, when, callback))
        return True

    def register_interval(self, name: str, seconds: float, callback: Callback, *, group: str = "interval") -> None:
        self._register(name, group, self._run_interval(name, max(seconds, 0.01), callback))

    def cancel(self, name: str) -> None:
        trigger = self._triggers.pop(name, None)
        if trigger and not trigger.task.done() and trigger.task is not asyncio.current_task():
            trigger.task.cancel()

    def cancel_group(self, group: str) -> None:
        for name in self.names(group):
            self.cancel(name)

    def cancel_all(self) -> None:
        for name in self.names():
            self.cancel(name)

    async def aclose(self) -> None:
        tasks = [trig.task for trig in self._triggers.values()]
        self.cancel_all()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _register(self, name: str, group: str, coro: Awaitable[None]) -> None:
        self.cancel(name)
        task = asyncio.ensure_future(coro)
        self._triggers[name] = _Trigger(name=name, group=group, task=task)
        LOG.log_event(20, "trigger_registered", name=name, group=group)

    async def _run_daily(self, name: str, at: dt.time, callback: Callback) -> None:
        while True:
            await self._clock.wait_until(next_occurrence(self._clock.now(), at))
            await self._fire(name, callback)

    async def _run_once(self, name: str, when: dt.datetime, callback: Callback) -> None:
        await self._clock.wait_until(when)
        trigger = self._triggers.get(name)
        if trigger is not None and trigger.task is asyncio.current_task():
            del self._triggers[name]
        await self._fire(name, callback)

    async def _run_interval(self, name: str, seconds: float, callback: Callback) -> None:
        while True:
            await asyncio.sleep(seconds)
            await self._fire(name, callback)

    async def _fire(self, name: str, callback: Callback) -> None:
        LOG.log_event(20, "trigger_fired", name=name)
        try:
            await callback()
        except Exception as exc:
            LOG.log_event(40, "scheduled_action_failed", name=name, error=str(exc))
            if self._on_error:
                try:
                    self._on_error(name, exc)
                except Exception as hook_exc:  # pragma: no cover
                    LOG.log_event(40, "scheduler_error_hook_failed", name=name, error=str(hook_exc))


class ExpiryScheduler:
    """Arms the engine's expiry-day triggers and the daily re-evaluation."""

    EXPIRY_GROUP = "expiry"

    def __init__(
        self,
        engine,
        scheduler: DailyScheduler,
        *,
        daily_check: dt.time = dt.time(9, 0),
        heartbeat_seconds: float = 0.0,
    ):
        self._engine = engine
        self._scheduler = scheduler
        self._daily_check = daily_check
        self._heartbeat_seconds = heartbeat_seconds

    async def start(self) -> bool:
        self._scheduler.register_daily("daily-check", self._daily_check, self.evaluate)
        if self._heartbeat_seconds > 0:
            self._scheduler.register_interval("heartbeat", self._heartbeat_seconds, self._engine.heartbeat)
        return await self.evaluate()

    async def evaluate(self) -> bool:
        """Disarm, re-check the day, and re-arm the expiry triggers if it is expiry day."""

        self._scheduler.cancel_group(self.EXPIRY_GROUP)
        expiry_day = await self._engine.evaluate_day()
        if expiry_day:
            self.arm()
        else:
            LOG.log_event(20, "expiry_triggers_idle", reason="not_expiry_day")
        return expiry_day

    def arm(self) -> List[str]:
        times = self._engine.trigger_times()
        plan = (
            ("expiry-exit", times.exit, self._engine.scheduled_exit),
            ("expiry-select", times.select, self._engine.scheduled_select_strikes),
            ("expiry-entry", times.entry, self._engine.scheduled_entry),
        )
        armed = [
            name
            for name, at, callback in plan
            if self._scheduler.register_once(name, at, callback, group=self.EXPIRY_GROUP)
        ]
        LOG.log_event(20, "expiry_triggers_armed", armed=armed)
        return armed

    async def stop(self) -> None:
        await self._scheduler.aclose()


__all__ = ["DailyScheduler", "ExpiryScheduler", "next_occurrence"]
