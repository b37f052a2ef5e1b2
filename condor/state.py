from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional


class StrategyStatus(str, Enum):
    IDLE = "IDLE"
    WAITING_FOR_EXPIRY = "WAITING_FOR_EXPIRY"
    EXIT_DONE = "EXIT_DONE"
    ENTRY_DONE = "ENTRY_DONE"
    ACTIVE = "ACTIVE"
    FORCE_EXITED = "FORCE_EXITED"


_TRANSITIONS: Dict[StrategyStatus, set[StrategyStatus]] = {
    StrategyStatus.IDLE: {
        StrategyStatus.WAITING_FOR_EXPIRY,
        StrategyStatus.EXIT_DONE,
        StrategyStatus.ENTRY_DONE,
        StrategyStatus.ACTIVE,
        StrategyStatus.FORCE_EXITED,
    },
    StrategyStatus.WAITING_FOR_EXPIRY: {
        StrategyStatus.IDLE,
        StrategyStatus.EXIT_DONE,
        StrategyStatus.ENTRY_DONE,
        StrategyStatus.ACTIVE,
        StrategyStatus.FORCE_EXITED,
    },
    StrategyStatus.EXIT_DONE: {
        StrategyStatus.IDLE,
        StrategyStatus.WAITING_FOR_EXPIRY,
        StrategyStatus.ENTRY_DONE,
        StrategyStatus.ACTIVE,
        StrategyStatus.FORCE_EXITED,
    },
    StrategyStatus.ENTRY_DONE: {
        StrategyStatus.IDLE,
        StrategyStatus.WAITING_FOR_EXPIRY,
        StrategyStatus.EXIT_DONE,
        StrategyStatus.ACTIVE,
        StrategyStatus.FORCE_EXITED,
    },
    StrategyStatus.ACTIVE: {
        StrategyStatus.IDLE,
        StrategyStatus.WAITING_FOR_EXPIRY,
        StrategyStatus.EXIT_DONE,
        StrategyStatus.FORCE_EXITED,
    },
    # only an operator reset leaves FORCE_EXITED
    StrategyStatus.FORCE_EXITED: {StrategyStatus.IDLE},
}

# statuses in which ticks drive exit/adjustment evaluation
MONITORED_STATUSES = frozenset({StrategyStatus.ACTIVE, StrategyStatus.WAITING_FOR_EXPIRY})


def can_transition(current: StrategyStatus, target: StrategyStatus) -> bool:
    if current == target:
        return True
    return target in _TRANSITIONS.get(current, set())


def coerce_status(value: Any, default: StrategyStatus = StrategyStatus.IDLE) -> StrategyStatus:
    try:
        return StrategyStatus(str(value).upper())
    except ValueError:
        return default


@dataclass
class Leg:
    token: str
    symbol: str
    option_type: str  # CE / PE
    side: str  # BUY / SELL
    strike: float
    entry_price: float
    quantity: int
    ltp: float = 0.0
    tier: Optional[int] = None
    adjusted: bool = False
    filled: bool = False

    @property
    def sign(self) -> int:
        return 1 if self.side == "BUY" else -1

    @property
    def pnl(self) -> float:
        return (self.ltp - self.entry_price) * self.quantity * self.sign

    def closing(self) -> "Leg":
        """Opposite-side copy used to flatten this leg."""

        return replace(self, side="SELL" if self.side == "BUY" else "BUY")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "Leg":
        tier = payload.get("tier")
        return Leg(
            token=str(payload["token"]),
            symbol=str(payload.get("symbol") or ""),
            option_type=str(payload.get("option_type") or "").upper(),
            side=str(payload.get("side") or "").upper(),
            strike=float(payload.get("strike") or 0.0),
            entry_price=float(payload.get("entry_price") or 0.0),
            quantity=int(payload.get("quantity") or 0),
            ltp=float(payload.get("ltp") or 0.0),
            tier=int(tier) if tier is not None else None,
            adjusted=bool(payload.get("adjusted", False)),
            filled=bool(payload.get("filled", False)),
        )


def compute_pnl(legs: Iterable[Leg]) -> float:
    """Sum of (ltp - entry) * qty * (+1 BUY / -1 SELL) over ``legs``; 0 for none."""

    return float(sum(leg.pnl for leg in legs))


@dataclass
class MonitoringState:
    """Confirmation timers, in epoch seconds; 0 means not armed. Never persisted."""

    profit_confirm_start: float = 0.0
    loss_confirm_start: float = 0.0
    adjustment_timers: Dict[str, float] = field(default_factory=dict)

    def clear(self) -> None:
        self.profit_confirm_start = 0.0
        self.loss_confirm_start = 0.0
        self.adjustment_timers.clear()


# columns written to the singleton engine-state row
PERSISTED_FIELDS = (
    "status",
    "is_virtual",
    "is_paused",
    "is_trade_placed",
    "pnl",
    "peak_profit",
    "peak_loss",
    "entry_time",
    "exit_time",
    "target_pnl",
    "stop_loss_pnl",
    "telegram_token",
    "telegram_chat_id",
    "required_margin",
    "available_margin",
    "engine_activity",
    "next_action",
    "last_heartbeat",
)


@dataclass
class StrategyState:
    status: StrategyStatus = StrategyStatus.IDLE
    is_virtual: bool = True
    is_paused: bool = False
    is_trade_placed: bool = False
    legs: List[Leg] = field(default_factory=list)
    pnl: float = 0.0
    peak_profit: float = 0.0
    peak_loss: float = 0.0
    entry_time: str = "13:00"
    exit_time: str = "12:45"
    target_pnl: float = 2100.0
    stop_loss_pnl: float = -1500.0
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    required_margin: float = 0.0
    available_margin: float = 0.0
    engine_activity: str = "Initializing"
    next_action: str = ""
    last_heartbeat: Optional[str] = None
    monitoring: MonitoringState = field(default_factory=MonitoringState)

    def recompute_pnl(self) -> float:
        self.pnl = compute_pnl(self.legs)
        if self.pnl > self.peak_profit:
            self.peak_profit = self.pnl
        if self.pnl < self.peak_loss:
            self.peak_loss = self.pnl
        return self.pnl

    def start_cycle(self) -> None:
        """Fresh monitoring cycle for a new basket."""

        self.pnl = 0.0
        self.peak_profit = 0.0
        self.peak_loss = 0.0
        self.monitoring.clear()

    def find_leg(self, token: str) -> Optional[Leg]:
        for leg in self.legs:
            if leg.token == token:
                return leg
        return None

    def tokens(self) -> List[str]:
        return [leg.token for leg in self.legs]

    def filled_legs(self) -> List[Leg]:
        """Legs with a confirmed entry fill; the only ones an exit has to close."""

        return [leg for leg in self.legs if leg.filled]

    def persisted_fields(self) -> Dict[str, Any]:
        payload = {name: getattr(self, name) for name in PERSISTED_FIELDS}
        payload["status"] = self.status.value
        return payload

    def apply_persisted(self, row: Mapping[str, Any]) -> None:
        for name in PERSISTED_FIELDS:
            if name not in row or row[name] is None:
                continue
            value = row[name]
            if name == "status":
                self.status = coerce_status(value)
            elif name.startswith("is_"):
                setattr(self, name, bool(value))
            elif isinstance(getattr(self, name), float):
                setattr(self, name, float(value))
            else:
                setattr(self, name, value)

    def snapshot(self) -> Dict[str, Any]:
        payload = self.persisted_fields()
        payload["legs"] = [leg.to_dict() for leg in self.legs]
        payload["monitoring"] = {
            "profit_confirm_start": self.monitoring.profit_confirm_start,
            "loss_confirm_start": self.monitoring.loss_confirm_start,
            "adjustment_timers": dict(self.monitoring.adjustment_timers),
        }
        return payload


__all__ = [
    "Leg",
    "MONITORED_STATUSES",
    "MonitoringState",
    "PERSISTED_FIELDS",
    "StrategyState",
    "StrategyStatus",
    "can_transition",
    "coerce_status",
    "compute_pnl",
]
