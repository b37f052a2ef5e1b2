from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set, Union

from condor.config import StrategyConfig
from condor.interfaces import ChainEntry
from condor.state import Leg


@dataclass(frozen=True)
class PricedOption:
    """A chain entry with the live quote fetched for it."""

    token: str
    symbol: str
    option_type: str
    strike: float
    price: float
    lot_size: Optional[int] = None


# anything with token, option_type and strike
Contract = Union[PricedOption, ChainEntry]


@dataclass(frozen=True)
class SelectionTargets:
    tier1_premium: float = 150.0
    tier2_premium: float = 75.0
    hedge_premium: float = 7.0
    default_quantity: int = 50

    @staticmethod
    def from_config(cfg: StrategyConfig) -> "SelectionTargets":
        return SelectionTargets(
            tier1_premium=cfg.tier1_premium,
            tier2_premium=cfg.tier2_premium,
            hedge_premium=cfg.hedge_premium,
            default_quantity=cfg.lot_size,
        )


def best_match(
    options: Sequence[PricedOption], option_type: str, target: float, used: Set[str]
) -> Optional[PricedOption]:
    """Closest premium to ``target``; equidistant candidates keep chain order."""

    candidates = [opt for opt in options if opt.option_type == option_type and opt.token not in used]
    if not candidates:
        return None
    # sorted() is stable so the first equidistant candidate wins
    return sorted(candidates, key=lambda opt: abs(opt.price - target))[0]


def adjacent_strike(
    options: Sequence[Contract], option_type: str, strike: float, direction: int, used: Set[str]
) -> Optional[Contract]:
    """Nearest strike strictly above (direction > 0) or below ``strike``, price ignored."""

    if direction > 0:
        candidates = [o for o in options if o.option_type == option_type and o.strike > strike and o.token not in used]
        return min(candidates, key=lambda opt: opt.strike) if candidates else None
    candidates = [o for o in options if o.option_type == option_type and o.strike < strike and o.token not in used]
    return max(candidates, key=lambda opt: opt.strike) if candidates else None


def _leg(opt: PricedOption, side: str, tier: int, targets: SelectionTargets) -> Leg:
    return Leg(
        token=opt.token,
        symbol=opt.symbol,
        option_type=opt.option_type,
        side=side,
        strike=opt.strike,
        entry_price=opt.price,
        ltp=opt.price,
        quantity=opt.lot_size or targets.default_quantity,
        tier=tier,
    )


def build_basket(options: Iterable[PricedOption], targets: SelectionTargets) -> List[Leg]:
    """
    Build the 8-leg condor-with-hedges basket by premium proximity.

    Tier 1: BUY CE ~tier1 -> SELL next higher CE -> BUY PE ~tier1 -> SELL next lower PE.
    Tier 2: SELL CE ~tier2 -> BUY CE ~hedge -> SELL PE ~tier2 -> BUY PE ~hedge.

    Each pick consumes its token. A missing tier-1 anchor also skips its paired
    short, so the basket can come back with fewer than eight legs.
    """

    chain = list(options)
    used: Set[str] = set()
    legs: List[Leg] = []

    def take(opt: Optional[PricedOption], side: str, tier: int) -> Optional[PricedOption]:
        if opt is None:
            return None
        used.add(opt.token)
        legs.append(_leg(opt, side, tier, targets))
        return opt

    for option_type, direction in (("CE", 1), ("PE", -1)):
        anchor = take(best_match(chain, option_type, targets.tier1_premium, used), "BUY", 1)
        if anchor is not None:
            take(adjacent_strike(chain, option_type, anchor.strike, direction, used), "SELL", 1)

    for option_type in ("CE", "PE"):
        take(best_match(chain, option_type, targets.tier2_premium, used), "SELL", 2)
        take(best_match(chain, option_type, targets.hedge_premium, used), "BUY", 2)

    return legs


def hedge_beyond(
    options: Sequence[Contract], short_leg: Leg, held_tokens: Set[str]
) -> Optional[Contract]:
    """Further-OTM strike one step past ``short_leg``: higher for CE, lower for PE."""

    direction = 1 if short_leg.option_type == "CE" else -1
    ordered = sorted(options, key=lambda opt: opt.strike)
    return adjacent_strike(ordered, short_leg.option_type, short_leg.strike, direction, held_tokens)


def summarize(legs: Sequence[Leg], option_type: str) -> str:
    parts = [f"{leg.side} {int(leg.strike)} @ {leg.entry_price:.2f}" for leg in legs if leg.option_type == option_type]
    return ", ".join(parts) or "none"


__all__ = [
    "PricedOption",
    "SelectionTargets",
    "adjacent_strike",
    "best_match",
    "build_basket",
    "hedge_beyond",
    "summarize",
]
