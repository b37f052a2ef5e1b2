import datetime as dt

import pytest

from condor.expiry import (
    atm_strike,
    expiry_from_symbol,
    format_expiry,
    is_expiry_day,
    option_symbol,
    parse_expiry,
    sort_expiries,
    symbol_expiry,
    trading_expiry,
)
from condor.interfaces import ChainEntry
from condor.selection import PricedOption, SelectionTargets, best_match, build_basket, hedge_beyond, summarize
from condor.state import Leg

EXPIRY = dt.date(2026, 1, 13)
CE_PRICES = [330, 290, 250, 210, 180, 150, 120, 95, 75, 55, 35, 18, 7]
PE_PRICES = [7, 16, 30, 48, 75, 98, 125, 150, 185, 220, 260, 300, 340]
STRIKES = list(range(24700, 25301, 50))


def _chain() -> list[PricedOption]:
    options = []
    for strike, ce, pe in zip(STRIKES, CE_PRICES, PE_PRICES):
        for option_type, price in (("CE", ce), ("PE", pe)):
            options.append(
                PricedOption(
                    token=f"{option_type}{strike}",
                    symbol=option_symbol("NIFTY", EXPIRY, option_type, strike),
                    option_type=option_type,
                    strike=float(strike),
                    price=float(price),
                )
            )
    return options


def test_parse_expiry_accepts_any_month_case():
    assert parse_expiry("13-Jan-2026") == EXPIRY
    assert parse_expiry("13-JAN-2026") == EXPIRY
    assert format_expiry(EXPIRY) == "13-JAN-2026"


@pytest.mark.parametrize("bad", ["2026-01-13", "13-Foo-2026", "32-JAN-2026", ""])
def test_parse_expiry_rejects_malformed(bad):
    with pytest.raises(ValueError):
        parse_expiry(bad)


def test_sort_expiries_dedupes_and_orders():
    assert sort_expiries(["20-jan-2026", "13-JAN-2026", "20-JAN-2026", " "]) == ["13-JAN-2026", "20-JAN-2026"]


def test_expiry_day_uses_nearest_listed_expiry():
    expiries = ["13-JAN-2026", "20-JAN-2026"]
    assert is_expiry_day(expiries, EXPIRY)
    assert not is_expiry_day(expiries, dt.date(2026, 1, 20))
    assert not is_expiry_day([], EXPIRY)
    assert not is_expiry_day(["garbage"], EXPIRY)


def test_trading_expiry_prefers_next_week():
    assert trading_expiry(["13-JAN-2026", "20-JAN-2026"]) == "20-JAN-2026"
    assert trading_expiry(["13-JAN-2026"]) == "13-JAN-2026"
    assert trading_expiry([], "27-JAN-2026") == "27-JAN-2026"
    assert trading_expiry([]) is None


def test_atm_rounds_half_up():
    assert atm_strike(25010, 50) == 25000
    assert atm_strike(25025, 50) == 25050
    assert atm_strike(25024.99, 50) == 25000
    with pytest.raises(ValueError):
        atm_strike(25000, 0)


def test_symbols_round_trip_expiry():
    symbol = option_symbol("nifty", EXPIRY, "CE", 25000.0)
    assert symbol == "NIFTY13JAN26C25000"
    assert symbol_expiry(EXPIRY) == "13JAN26"
    assert expiry_from_symbol(symbol, "NIFTY") == EXPIRY
    assert option_symbol("NIFTY", EXPIRY, "PE", 24900) == "NIFTY13JAN26P24900"


def test_basket_selection_matches_premium_targets():
    legs = build_basket(_chain(), SelectionTargets())
    picked = [(leg.side, leg.option_type, int(leg.strike), leg.tier) for leg in legs]
    assert picked == [
        ("BUY", "CE", 24950, 1),
        ("SELL", "CE", 25000, 1),
        ("BUY", "PE", 25050, 1),
        ("SELL", "PE", 25000, 1),
        ("SELL", "CE", 25100, 2),
        ("BUY", "CE", 25300, 2),
        ("SELL", "PE", 24900, 2),
        ("BUY", "PE", 24700, 2),
    ]
    assert all(leg.entry_price == leg.ltp for leg in legs)
    assert all(leg.quantity == 50 for leg in legs)
    assert len({leg.token for leg in legs}) == 8


def test_basket_selection_is_deterministic():
    first = build_basket(_chain(), SelectionTargets())
    second = build_basket(_chain(), SelectionTargets())
    assert [leg.to_dict() for leg in first] == [leg.to_dict() for leg in second]


def test_equidistant_premiums_keep_chain_order():
    options = [
        PricedOption("a", "A", "CE", 25000.0, 145.0),
        PricedOption("b", "B", "CE", 25050.0, 155.0),
    ]
    assert best_match(options, "CE", 150.0, set()).token == "a"
    assert best_match(options, "CE", 150.0, {"a"}).token == "b"
    assert best_match(options, "PE", 150.0, set()) is None


def test_lot_size_from_quote_overrides_default():
    chain = [PricedOption("x", "X", "CE", 25000.0, 150.0, lot_size=75), PricedOption("y", "Y", "CE", 25050.0, 120.0)]
    legs = build_basket(chain, SelectionTargets(default_quantity=50))
    assert legs[0].quantity == 75
    assert legs[1].quantity == 50


def test_missing_side_yields_partial_basket():
    calls_only = [opt for opt in _chain() if opt.option_type == "CE"]
    legs = build_basket(calls_only, SelectionTargets())
    assert {leg.option_type for leg in legs} == {"CE"}
    assert len(legs) == 4


def test_hedge_beyond_moves_further_otm():
    chain = [ChainEntry(f"CE{k}", f"CE{k}", "CE", float(k)) for k in STRIKES] + [
        ChainEntry(f"PE{k}", f"PE{k}", "PE", float(k)) for k in STRIKES
    ]
    ce_short = Leg("CE25100", "CE25100", "CE", "SELL", 25100.0, 75.0, 50, tier=2)
    pe_short = Leg("PE24900", "PE24900", "PE", "SELL", 24900.0, 75.0, 50, tier=2)
    assert hedge_beyond(chain, ce_short, {"CE25100"}).strike == 25150.0
    assert hedge_beyond(chain, pe_short, {"PE24900"}).strike == 24850.0
    assert hedge_beyond(chain, ce_short, {"CE25150"}).strike == 25200.0
    edge = Leg("CE25300", "CE25300", "CE", "SELL", 25300.0, 7.0, 50, tier=2)
    assert hedge_beyond(chain, edge, set()) is None


def test_summarize_lists_one_side():
    legs = build_basket(_chain(), SelectionTargets())
    assert summarize(legs, "CE").startswith("BUY 24950 @ 150.00")
    assert summarize([], "PE") == "none"
