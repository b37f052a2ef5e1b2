from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from condor.state import StrategyStatus

MONITOR = "MONITOR"
LATE_EXIT = "LATE_EXIT"
WAIT = "WAIT"
HOLD = "HOLD"
IDLE = "IDLE"


@dataclass(frozen=True)
class RecoveryPlan:
    action: str
    status: StrategyStatus
    activity: str


def plan_recovery(
    *,
    has_legs: bool,
    persisted_status: StrategyStatus,
    expiry_day: bool,
    now: dt.time,
    exit_time: dt.time,
    selection_time: dt.time,
) -> RecoveryPlan:
    """
    Decide what a freshly started engine does with the state it loaded.

    Stored legs are trusted as live positions. A FORCE_EXITED engine stays
    that way until an operator resets it. On an expiry day, legs still open
    after the exit time but before the roll are squared off immediately.
    """

    if persisted_status == StrategyStatus.FORCE_EXITED:
        return RecoveryPlan(HOLD, StrategyStatus.FORCE_EXITED, "Force exited - reset required")
    if has_legs:
        if expiry_day and exit_time <= now < selection_time:
            return RecoveryPlan(LATE_EXIT, StrategyStatus.EXIT_DONE, "Late expiry square-off")
        if expiry_day and now < exit_time:
            return RecoveryPlan(MONITOR, StrategyStatus.WAITING_FOR_EXPIRY, "Monitoring until expiry exit")
        return RecoveryPlan(MONITOR, StrategyStatus.ACTIVE, "Monitoring positions")
    if expiry_day and now < exit_time:
        return RecoveryPlan(WAIT, StrategyStatus.WAITING_FOR_EXPIRY, "Waiting for expiry exit")
    if expiry_day and now < selection_time:
        return RecoveryPlan(WAIT, StrategyStatus.EXIT_DONE, "Waiting for strike selection")
    return RecoveryPlan(IDLE, StrategyStatus.IDLE, "Idle")


__all__ = ["HOLD", "IDLE", "LATE_EXIT", "MONITOR", "RecoveryPlan", "WAIT", "plan_recovery"]
