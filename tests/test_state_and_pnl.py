import pytest

from condor.state import (
    MONITORED_STATUSES,
    Leg,
    StrategyState,
    StrategyStatus,
    can_transition,
    coerce_status,
    compute_pnl,
)


def _leg(token: str, side: str, entry: float, ltp: float, qty: int = 50, **extra) -> Leg:
    return Leg(token=token, symbol=f"SYM{token}", option_type="CE", side=side, strike=25000.0, entry_price=entry, quantity=qty, ltp=ltp, **extra)


def test_pnl_is_signed_sum_over_legs():
    legs = [
        _leg("1", "SELL", 120.0, 100.0),  # +1000
        _leg("2", "BUY", 150.0, 140.0),  # -500
        _leg("3", "BUY", 7.0, 9.0, qty=75),  # +150
    ]
    assert compute_pnl(legs) == pytest.approx(650.0)


def test_pnl_of_empty_basket_is_zero():
    assert compute_pnl([]) == 0.0
    state = StrategyState()
    assert state.recompute_pnl() == 0.0


def test_pnl_depends_only_on_prices():
    legs = [_leg("1", "SELL", 120.0, 110.0), _leg("2", "BUY", 50.0, 55.0)]
    first = compute_pnl(legs)
    assert compute_pnl(list(reversed(legs))) == pytest.approx(first)
    assert compute_pnl(legs) == pytest.approx(first)


def test_peaks_only_widen():
    state = StrategyState(legs=[_leg("1", "SELL", 100.0, 100.0)])
    for ltp, pnl in ((90.0, 500.0), (110.0, -500.0), (95.0, 250.0), (80.0, 1000.0)):
        state.legs[0].ltp = ltp
        assert state.recompute_pnl() == pytest.approx(pnl)
    assert state.peak_profit == pytest.approx(1000.0)
    assert state.peak_loss == pytest.approx(-500.0)


def test_start_cycle_clears_peaks_and_timers():
    state = StrategyState(peak_profit=100.0, peak_loss=-50.0, pnl=10.0)
    state.monitoring.profit_confirm_start = 1.0
    state.monitoring.adjustment_timers["x"] = 2.0
    state.start_cycle()
    assert (state.pnl, state.peak_profit, state.peak_loss) == (0.0, 0.0, 0.0)
    assert state.monitoring.profit_confirm_start == 0.0
    assert state.monitoring.adjustment_timers == {}


def test_leg_closing_flips_side_only():
    leg = _leg("1", "SELL", 100.0, 90.0, tier=2)
    closing = leg.closing()
    assert closing.side == "BUY"
    assert (closing.token, closing.quantity, closing.tier) == (leg.token, leg.quantity, leg.tier)
    assert leg.side == "SELL"


def test_leg_from_dict_normalises_types():
    leg = Leg.from_dict(
        {"token": 123, "symbol": "NIFTY13JAN26C25000", "option_type": "ce", "side": "sell", "strike": "25000", "entry_price": "120.5", "quantity": "50", "tier": "2", "adjusted": 1}
    )
    assert leg.token == "123"
    assert leg.option_type == "CE"
    assert leg.side == "SELL"
    assert leg.strike == 25000.0
    assert leg.tier == 2
    assert leg.adjusted is True
    assert leg.ltp == 0.0


def test_force_exited_only_leaves_through_idle():
    for target in StrategyStatus:
        expected = target in (StrategyStatus.IDLE, StrategyStatus.FORCE_EXITED)
        assert can_transition(StrategyStatus.FORCE_EXITED, target) is expected


def test_active_cannot_jump_back_to_entry_done():
    assert not can_transition(StrategyStatus.ACTIVE, StrategyStatus.ENTRY_DONE)
    assert can_transition(StrategyStatus.ENTRY_DONE, StrategyStatus.ACTIVE)
    assert can_transition(StrategyStatus.WAITING_FOR_EXPIRY, StrategyStatus.EXIT_DONE)


def test_monitored_statuses():
    assert MONITORED_STATUSES == {StrategyStatus.ACTIVE, StrategyStatus.WAITING_FOR_EXPIRY}


def test_coerce_status_falls_back_to_default():
    assert coerce_status("active") is StrategyStatus.ACTIVE
    assert coerce_status("bogus") is StrategyStatus.IDLE
    assert coerce_status(None, StrategyStatus.FORCE_EXITED) is StrategyStatus.FORCE_EXITED


def test_persisted_fields_round_trip():
    state = StrategyState(status=StrategyStatus.ACTIVE, is_paused=True, pnl=120.0, target_pnl=3000.0, engine_activity="x")
    restored = StrategyState()
    restored.apply_persisted(state.persisted_fields())
    assert restored.status is StrategyStatus.ACTIVE
    assert restored.is_paused is True
    assert restored.target_pnl == 3000.0
    assert restored.engine_activity == "x"
    assert "monitoring" not in state.persisted_fields()
