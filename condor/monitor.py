from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from condor.state import StrategyState

PROFIT = "PROFIT"
LOSS = "LOSS"


def confirm(active: bool, started: float, now: float, hold_seconds: float) -> Tuple[float, bool]:
    """
    Advance a continuous-condition timer.

    Returns ``(start, fired)``. ``start`` is 0 whenever the condition is false,
    so any break in the condition restarts the hold from scratch.
    """

    if not active:
        return 0.0, False
    if not started:
        return now, False
    return started, (now - started) >= hold_seconds


@dataclass(frozen=True)
class ExitSignal:
    kind: str
    reason: str


class RiskMonitor:
    """Per-tick adjustment and exit evaluation over ``StrategyState`` timers."""

    def __init__(self, *, confirm_seconds: float = 10.0, adjustment_trigger: float = 100.0):
        self.confirm_seconds = confirm_seconds
        self.adjustment_trigger = adjustment_trigger

    def due_adjustments(self, state: StrategyState, now: float) -> List[str]:
        """Tokens of tier-2 shorts that stayed above the trigger for the full hold."""

        timers = state.monitoring.adjustment_timers
        due: List[str] = []
        for leg in state.legs:
            if leg.tier != 2 or leg.side != "SELL" or leg.adjusted:
                continue
            start, fired = confirm(leg.ltp > self.adjustment_trigger, timers.get(leg.token, 0.0), now, self.confirm_seconds)
            if fired:
                timers.pop(leg.token, None)
                due.append(leg.token)
            elif start:
                timers[leg.token] = start
            else:
                timers.pop(leg.token, None)
        return due

    def exit_signal(self, state: StrategyState, now: float) -> Optional[ExitSignal]:
        monitoring = state.monitoring
        target = state.target_pnl
        stop = state.stop_loss_pnl
        # a zero threshold disables that side
        monitoring.profit_confirm_start, profit_hit = confirm(
            bool(target) and state.pnl > target, monitoring.profit_confirm_start, now, self.confirm_seconds
        )
        monitoring.loss_confirm_start, loss_hit = confirm(
            bool(stop) and state.pnl < stop, monitoring.loss_confirm_start, now, self.confirm_seconds
        )
        window = f"{self.confirm_seconds:g}s confirmation"
        if profit_hit:
            return ExitSignal(PROFIT, f"Profit Target ₹{target:g} ({window})")
        if loss_hit:
            return ExitSignal(LOSS, f"Loss Limit ₹{abs(stop):g} ({window})")
        return None


__all__ = ["ExitSignal", "LOSS", "PROFIT", "RiskMonitor", "confirm"]
