import asyncio
import datetime as dt

import pytest

from condor.config import IST
from condor.engine import TriggerTimes
from condor.scheduler import DailyScheduler, ExpiryScheduler, next_occurrence


class FakeClock:
    """Manual clock: ``wait_until`` parks until the test moves ``now`` past the target."""

    def __init__(self, now: dt.datetime):
        self._now = now
        self.waits: list[dt.datetime] = []

    @property
    def tz(self):
        return IST

    def now(self) -> dt.datetime:
        return self._now

    def today(self) -> dt.date:
        return self._now.date()

    def set(self, hour: int, minute: int, second: int = 0) -> None:
        self._now = self._now.replace(hour=hour, minute=minute, second=second)

    async def wait_until(self, when: dt.datetime) -> None:
        self.waits.append(when)
        while self._now < when:
            await asyncio.sleep(0)


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _clock(hour: int = 9, minute: int = 0) -> FakeClock:
    return FakeClock(dt.datetime(2026, 1, 13, hour, minute, tzinfo=IST))


def test_next_occurrence_rolls_to_tomorrow():
    now = dt.datetime(2026, 1, 13, 12, 0, tzinfo=IST)
    assert next_occurrence(now, dt.time(13, 0)) == dt.datetime(2026, 1, 13, 13, 0, tzinfo=IST)
    assert next_occurrence(now, dt.time(12, 0)) == dt.datetime(2026, 1, 14, 12, 0, tzinfo=IST)
    assert next_occurrence(now, dt.time(9, 0)) == dt.datetime(2026, 1, 14, 9, 0, tzinfo=IST)


@pytest.mark.asyncio
async def test_once_trigger_in_the_past_is_not_armed():
    scheduler = DailyScheduler(_clock(13, 0))
    fired = []

    async def callback():
        fired.append(True)

    assert scheduler.register_once("late", dt.time(12, 45), callback) is False
    assert scheduler.names() == []
    await _settle()
    assert fired == []


@pytest.mark.asyncio
async def test_once_trigger_fires_once_and_unregisters():
    clock = _clock(12, 0)
    scheduler = DailyScheduler(clock)
    fired = []

    async def callback():
        fired.append(clock.now().time())

    assert scheduler.register_once("exit", dt.time(12, 45), callback, group="expiry")
    await _settle()
    assert fired == []
    assert scheduler.names("expiry") == ["exit"]
    clock.set(12, 45)
    await _settle()
    assert fired == [dt.time(12, 45)]
    assert scheduler.names() == []
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_reregistering_replaces_previous_trigger():
    clock = _clock(12, 0)
    scheduler = DailyScheduler(clock)
    fired = []

    async def first():
        fired.append("first")

    async def second():
        fired.append("second")

    scheduler.register_once("entry", dt.time(13, 0), first)
    scheduler.register_once("entry", dt.time(13, 0), second)
    await _settle()
    clock.set(13, 0)
    await _settle()
    assert fired == ["second"]
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_failing_trigger_reports_and_others_still_fire():
    clock = _clock(12, 0)
    errors = []
    scheduler = DailyScheduler(clock, on_error=lambda name, exc: errors.append((name, str(exc))))
    fired = []

    async def broken():
        raise RuntimeError("boom")

    async def healthy():
        fired.append("ok")

    scheduler.register_once("broken", dt.time(12, 30), broken)
    scheduler.register_once("healthy", dt.time(12, 30), healthy)
    clock.set(12, 30)
    await _settle()
    assert errors == [("broken", "boom")]
    assert fired == ["ok"]
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_daily_trigger_waits_for_next_occurrence():
    clock = _clock(9, 30)
    scheduler = DailyScheduler(clock)
    fired = []

    async def callback():
        fired.append(clock.now())

    scheduler.register_daily("daily-check", dt.time(9, 0), callback)
    await _settle()
    assert clock.waits[0] == dt.datetime(2026, 1, 14, 9, 0, tzinfo=IST)
    assert fired == []
    await scheduler.aclose()
    assert scheduler.names() == []


class FakeEngine:
    def __init__(self, expiry_day: bool):
        self.expiry_day = expiry_day
        self.calls: list[str] = []

    def trigger_times(self) -> TriggerTimes:
        return TriggerTimes(exit=dt.time(12, 45), select=dt.time(12, 59, 30), entry=dt.time(13, 0))

    async def evaluate_day(self) -> bool:
        self.calls.append("evaluate")
        return self.expiry_day

    async def scheduled_exit(self) -> None:
        self.calls.append("exit")

    async def scheduled_select_strikes(self) -> None:
        self.calls.append("select")

    async def scheduled_entry(self) -> None:
        self.calls.append("entry")

    async def heartbeat(self) -> None:
        self.calls.append("heartbeat")


@pytest.mark.asyncio
async def test_expiry_scheduler_arms_triggers_on_expiry_day():
    clock = _clock(9, 0)
    engine = FakeEngine(expiry_day=True)
    scheduler = DailyScheduler(clock)
    expiry = ExpiryScheduler(engine, scheduler, daily_check=dt.time(9, 0))

    assert await expiry.start() is True
    assert scheduler.names("expiry") == ["expiry-entry", "expiry-exit", "expiry-select"]
    assert "daily-check" in scheduler.names()

    for hour, minute, second in ((12, 45, 0), (12, 59, 30), (13, 0, 0)):
        clock.set(hour, minute, second)
        await _settle()
    assert engine.calls == ["evaluate", "exit", "select", "entry"]
    assert scheduler.names("expiry") == []
    await expiry.stop()


@pytest.mark.asyncio
async def test_expiry_scheduler_skips_passed_triggers_and_non_expiry_days():
    clock = _clock(12, 50)
    engine = FakeEngine(expiry_day=True)
    scheduler = DailyScheduler(clock)
    expiry = ExpiryScheduler(engine, scheduler)
    await expiry.start()
    assert scheduler.names("expiry") == ["expiry-entry", "expiry-select"]

    engine.expiry_day = False
    assert await expiry.evaluate() is False
    assert scheduler.names("expiry") == []
    await expiry.stop()


@pytest.mark.asyncio
async def test_heartbeat_is_registered_as_interval():
    clock = _clock(10, 0)
    engine = FakeEngine(expiry_day=False)
    scheduler = DailyScheduler(clock)
    expiry = ExpiryScheduler(engine, scheduler, heartbeat_seconds=0.01)
    await expiry.start()
    assert "heartbeat" in scheduler.names("interval")
    await asyncio.sleep(0.05)
    await expiry.stop()
    assert "heartbeat" in engine.calls
