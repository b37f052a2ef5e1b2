from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from condor.state import Leg

TickHandler = Callable[[str, float], None]


@dataclass(frozen=True)
class Quote:
    last_price: float
    lot_size: Optional[int] = None


@dataclass(frozen=True)
class ChainEntry:
    token: str
    symbol: str
    option_type: str
    strike: float


@dataclass(frozen=True)
class Fill:
    fill_price: float
    order_id: str


class MarketDataClient(Protocol):
    def is_authenticated(self) -> bool: ...

    async def get_quote(self, exchange: str, token: str) -> Quote: ...

    async def get_option_chain(
        self, exchange: str, anchor_symbol: str, anchor_strike: float, window: int
    ) -> List[ChainEntry]: ...

    async def get_expiries(self) -> List[str]: ...

    async def subscribe(self, tokens: Sequence[str]) -> None: ...

    async def unsubscribe(self, tokens: Sequence[str]) -> None: ...

    def set_tick_handler(self, handler: TickHandler) -> None: ...


class OrderGateway(Protocol):
    def is_authenticated(self) -> bool: ...

    async def place_order(self, leg: Leg) -> Fill: ...

    async def get_basket_margin(self, legs: Sequence[Leg]) -> float: ...

    async def get_available_margin(self) -> float: ...


class PersistenceStore(Protocol):
    def upsert_engine_state(self, partial: Mapping[str, Any]) -> None: ...

    def get_engine_state(self) -> Optional[Dict[str, Any]]: ...

    def replace_legs(self, legs: Sequence[Mapping[str, Any]]) -> None: ...

    def get_legs(self) -> List[Dict[str, Any]]: ...

    def append_order_log(self, entry: Mapping[str, Any]) -> None: ...

    def append_system_log(self, message: str) -> None: ...

    def append_trade_history(self, entry: Mapping[str, Any]) -> None: ...

    def append_pnl_snapshot(self, pnl: float) -> None: ...

    def cleanup_older_than(self, days: int) -> int: ...


class NotificationSink(Protocol):
    def notify(self, level: str, title: str, body: str, tags: Optional[Mapping[str, str]] = None) -> bool: ...

    def set_telegram_credentials(self, token: Optional[str], chat_id: Optional[str]) -> None: ...


__all__ = [
    "ChainEntry",
    "Fill",
    "MarketDataClient",
    "NotificationSink",
    "OrderGateway",
    "PersistenceStore",
    "Quote",
    "TickHandler",
]
