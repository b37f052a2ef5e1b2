import datetime as dt

import pytest

from condor.recovery import HOLD, IDLE, LATE_EXIT, MONITOR, WAIT, plan_recovery
from condor.state import StrategyStatus

EXIT = dt.time(12, 45)
SELECT = dt.time(12, 59, 30)


def _plan(**kwargs):
    base = {
        "has_legs": False,
        "persisted_status": StrategyStatus.IDLE,
        "expiry_day": False,
        "now": dt.time(10, 0),
        "exit_time": EXIT,
        "selection_time": SELECT,
    }
    base.update(kwargs)
    return plan_recovery(**base)


def test_force_exited_is_held_even_with_legs():
    plan = _plan(has_legs=True, persisted_status=StrategyStatus.FORCE_EXITED, expiry_day=True)
    assert plan.action == HOLD
    assert plan.status == StrategyStatus.FORCE_EXITED


@pytest.mark.parametrize(
    "expiry_day,now,action,status",
    [
        (False, dt.time(10, 0), MONITOR, StrategyStatus.ACTIVE),
        (True, dt.time(10, 0), MONITOR, StrategyStatus.WAITING_FOR_EXPIRY),
        (True, dt.time(12, 50), LATE_EXIT, StrategyStatus.EXIT_DONE),
        (True, dt.time(12, 45), LATE_EXIT, StrategyStatus.EXIT_DONE),
        (True, dt.time(14, 0), MONITOR, StrategyStatus.ACTIVE),
    ],
)
def test_open_legs(expiry_day, now, action, status):
    plan = _plan(has_legs=True, persisted_status=StrategyStatus.ACTIVE, expiry_day=expiry_day, now=now)
    assert (plan.action, plan.status) == (action, status)


@pytest.mark.parametrize(
    "expiry_day,now,action,status",
    [
        (True, dt.time(9, 30), WAIT, StrategyStatus.WAITING_FOR_EXPIRY),
        (True, dt.time(12, 50), WAIT, StrategyStatus.EXIT_DONE),
        (True, dt.time(13, 30), IDLE, StrategyStatus.IDLE),
        (False, dt.time(9, 30), IDLE, StrategyStatus.IDLE),
    ],
)
def test_flat_book(expiry_day, now, action, status):
    plan = _plan(expiry_day=expiry_day, now=now, persisted_status=StrategyStatus.EXIT_DONE)
    assert (plan.action, plan.status) == (action, status)
    assert plan.activity
