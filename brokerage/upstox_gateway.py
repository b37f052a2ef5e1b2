from __future__ import annotations

import asyncio
import datetime as dt
import random
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from upstox_client.rest import ApiException

from brokerage.upstox_client import UpstoxSession, expiry_iso
from condor.config import BrokerConfig
from condor.errors import AuthRequired, BrokerError
from condor.expiry import expiry_from_symbol, format_expiry, option_symbol, sort_expiries
from condor.interfaces import ChainEntry, Fill, Quote, TickHandler
from condor.logging_utils import get_logger
from condor.state import Leg

LOG = get_logger("UpstoxGateway")

ExpirySource = Callable[[], Sequence[str]]


class _UpstoxRest:
    """Shared retry/timeout/auth handling for blocking SDK calls run off the loop."""

    def __init__(self, session: UpstoxSession, cfg: Optional[BrokerConfig] = None):
        self._session = session
        self._cfg = cfg or BrokerConfig()
        self._authenticated = bool(session.config.access_token)

    def is_authenticated(self) -> bool:
        return self._authenticated

    async def _rest_call(
        self,
        action: str,
        fn: Callable[[UpstoxSession], Any],
        *,
        context: Optional[dict[str, Any]] = None,
        retries: Optional[int] = None,
    ) -> Any:
        retries = max(int(self._cfg.max_retries if retries is None else retries), 1)
        backoff = max(float(self._cfg.retry_backoff), 0.0)
        last_exc: Optional[Exception] = None
        for attempt in range(1, retries + 1):
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, self._session), timeout=self._cfg.rest_timeout)
            except ApiException as exc:
                last_exc = exc
                if exc.status == 401:
                    self._authenticated = False
                    LOG.log_event(40, "broker_auth_failed", action=action, **(context or {}))
                    raise AuthRequired(f"{action} returned 401", context=context) from exc
                if self._should_retry(exc.status) and attempt < retries:
                    await asyncio.sleep(backoff + random.uniform(0, backoff))
                    backoff *= 2
                    continue
                raise BrokerError(code="api_error", message=str(exc), status=exc.status, context=context) from exc
            except asyncio.TimeoutError as exc:
                last_exc = exc
                if attempt < retries:
                    LOG.log_event(30, "broker_timeout", action=action, attempt=attempt)
                    await asyncio.sleep(backoff + random.uniform(0, backoff))
                    backoff *= 2
                    continue
        raise BrokerError(code="timeout", message=f"{action} timed out: {last_exc}", context=context) from last_exc

    @staticmethod
    def _should_retry(status: Optional[int]) -> bool:
        if status is None:
            return True
        return status == 429 or status >= 500


class UpstoxMarketData(_UpstoxRest):
    """
    Quotes, option contracts, expiries and the live LTP feed.

    Chain entries carry the Upstox instrument key as ``token`` and the engine's
    own ``NIFTY13JAN26C25000`` style symbol, so later lookups (adjustments)
    can recover the expiry from the symbol alone. ``expiry_source`` supplies
    the manually maintained expiry list; the broker's contract list is used
    when it is empty.
    """

    def __init__(
        self,
        session: UpstoxSession,
        *,
        index_symbol: str,
        index_token: str,
        cfg: Optional[BrokerConfig] = None,
        expiry_source: Optional[ExpirySource] = None,
        feed_mode: str = "ltpc",
    ):
        super().__init__(session, cfg)
        self._index_symbol = index_symbol
        self._index_token = index_token
        self._expiry_source = expiry_source
        self._feed_mode = feed_mode
        self._lot_sizes: Dict[str, int] = {}
        self._handler: Optional[TickHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._streamer: Any = None
        self._subscribed: set[str] = set()
        self._stream_lock = threading.Lock()

    # ------------------------------------------------------------------ REST
    async def get_quote(self, exchange: str, token: str) -> Quote:
        key = token if "|" in token else f"{exchange}|{token}"
        quotes = await self._rest_call("get_ltp", lambda s: s.get_ltp(key), context={"instrument": key})
        row = quotes.get(key) or next(iter(quotes.values()), {})
        return Quote(last_price=float(row.get("last_price") or 0.0), lot_size=self._lot_sizes.get(key))

    async def get_option_chain(
        self, exchange: str, anchor_symbol: str, anchor_strike: float, window: int
    ) -> List[ChainEntry]:
        expiry = expiry_from_symbol(anchor_symbol, self._index_symbol)
        contracts = await self._rest_call(
            "get_option_contracts",
            lambda s: s.get_option_contracts(self._index_token, expiry_iso(expiry)),
            context={"expiry": expiry_iso(expiry)},
        )
        entries: List[ChainEntry] = []
        for raw in contracts:
            row = dict(raw)
            key = row.get("instrument_key")
            option_type = str(row.get("instrument_type") or "").upper()
            if not key or option_type not in {"CE", "PE"}:
                continue
            strike = float(row.get("strike_price") or 0.0)
            if row.get("lot_size"):
                self._lot_sizes[key] = int(row["lot_size"])
            entries.append(
                ChainEntry(
                    token=key,
                    symbol=option_symbol(self._index_symbol, expiry, option_type, strike),
                    option_type=option_type,
                    strike=strike,
                )
            )
        return self._around(entries, anchor_strike, window)

    @staticmethod
    def _around(entries: List[ChainEntry], anchor_strike: float, window: int) -> List[ChainEntry]:
        """Keep ``window`` strikes either side of the strike nearest ``anchor_strike``."""

        strikes = sorted({entry.strike for entry in entries})
        if not strikes:
            return []
        centre = min(range(len(strikes)), key=lambda idx: abs(strikes[idx] - anchor_strike))
        keep = set(strikes[max(centre - window, 0): centre + window + 1])
        return sorted((e for e in entries if e.strike in keep), key=lambda e: (e.strike, e.option_type))

    async def get_expiries(self) -> List[str]:
        if self._expiry_source is not None:
            manual = list(await asyncio.to_thread(self._expiry_source))
            if manual:
                return sort_expiries(manual)
        contracts = await self._rest_call(
            "get_option_contracts", lambda s: s.get_option_contracts(self._index_token)
        )
        dates = {dt.date.fromisoformat(str(row.get("expiry"))[:10]) for row in contracts if row.get("expiry")}
        return [format_expiry(day) for day in sorted(dates)]

    # ------------------------------------------------------------------ feed
    def set_tick_handler(self, handler: TickHandler) -> None:
        self._handler = handler

    async def subscribe(self, tokens: Sequence[str]) -> None:
        fresh = [token for token in tokens if token not in self._subscribed]
        if not fresh:
            return
        self._loop = asyncio.get_running_loop()
        with self._stream_lock:
            if self._streamer is None:
                self._start_streamer(fresh)
            else:
                self._streamer.subscribe(fresh, self._feed_mode)
            self._subscribed.update(fresh)
        LOG.log_event(20, "feed_subscribed", tokens=len(fresh), total=len(self._subscribed))

    async def unsubscribe(self, tokens: Sequence[str]) -> None:
        stale = [token for token in tokens if token in self._subscribed]
        if not stale:
            return
        with self._stream_lock:
            if self._streamer is not None:
                self._streamer.unsubscribe(stale)
            self._subscribed.difference_update(stale)
        LOG.log_event(20, "feed_unsubscribed", tokens=len(stale), total=len(self._subscribed))

    def close(self) -> None:
        with self._stream_lock:
            if self._streamer is not None:
                self._streamer.disconnect()
                self._streamer = None
            self._subscribed.clear()

    def _start_streamer(self, tokens: Sequence[str]) -> None:
        streamer = self._session.market_streamer(tokens, self._feed_mode)
        streamer.on("message", self._on_message)
        streamer.on("error", lambda err: LOG.log_event(40, "feed_error", error=str(err)))
        streamer.on("close", lambda *args: LOG.log_event(30, "feed_closed"))
        streamer.auto_reconnect(True, 5, 20)
        threading.Thread(target=streamer.connect, name="upstox-feed", daemon=True).start()
        self._streamer = streamer

    def _on_message(self, message: Any) -> None:
        """SDK thread callback; hops each LTP onto the engine loop."""

        if self._handler is None or self._loop is None or not isinstance(message, Mapping):
            return
        for key, ltp in self.parse_feed(message).items():
            self._loop.call_soon_threadsafe(self._handler, key, ltp)

    @staticmethod
    def parse_feed(message: Mapping[str, Any]) -> Dict[str, float]:
        """Extract ``{instrument_key: ltp}`` from a decoded V3 feed frame (ltpc or full mode)."""

        prices: Dict[str, float] = {}
        for key, feed in (message.get("feeds") or {}).items():
            if not isinstance(feed, Mapping):
                continue
            ltpc = feed.get("ltpc")
            if ltpc is None:
                full = feed.get("fullFeed") or {}
                section = full.get("marketFF") or full.get("indexFF") or {}
                ltpc = section.get("ltpc")
            if not isinstance(ltpc, Mapping) or ltpc.get("ltp") is None:
                continue
            prices[str(key)] = float(ltpc["ltp"])
        return prices


class UpstoxOrderGateway(_UpstoxRest):
    """Market orders, basket margin and funds for the live mode."""

    def __init__(
        self,
        session: UpstoxSession,
        *,
        cfg: Optional[BrokerConfig] = None,
        product: str = "D",
        fill_poll_attempts: int = 5,
        fill_poll_interval: float = 0.5,
    ):
        super().__init__(session, cfg)
        self._product = product
        self._fill_poll_attempts = max(fill_poll_attempts, 0)
        self._fill_poll_interval = fill_poll_interval

    async def place_order(self, leg: Leg) -> Fill:
        context = {"token": leg.token, "side": leg.side, "qty": leg.quantity}
        # single attempt: a timed-out submission may still reach the exchange
        placed = await self._rest_call(
            "place_order",
            lambda s: s.place_market_order(leg.token, leg.side, leg.quantity, product=self._product),
            context=context,
            retries=1,
        )
        if not placed.success or not placed.order_id:
            raise BrokerError(code="rejected", message=placed.message or "order rejected", context=context)
        price = await self._await_fill(placed.order_id, context)
        return Fill(fill_price=price or leg.ltp or leg.entry_price, order_id=placed.order_id)

    async def _await_fill(self, order_id: str, context: Mapping[str, Any]) -> float:
        for _ in range(self._fill_poll_attempts):
            details = await self._rest_call("get_order_details", lambda s: s.get_order_details(order_id), context=dict(context))
            status = str(details.get("status") or "").lower()
            if status == "rejected":
                raise BrokerError(
                    code="rejected", message=str(details.get("status_message") or "order rejected"), context=dict(context)
                )
            price = float(details.get("average_price") or 0.0)
            if status == "complete" and price > 0:
                return price
            await asyncio.sleep(self._fill_poll_interval)
        LOG.log_event(30, "fill_price_unconfirmed", order_id=order_id, **context)
        return 0.0

    async def get_basket_margin(self, legs: Sequence[Leg]) -> float:
        instruments = [
            {"instrument_key": leg.token, "quantity": leg.quantity, "product": self._product, "transaction_type": leg.side}
            for leg in legs
        ]
        return float(await self._rest_call("post_margin", lambda s: s.post_margin(instruments)))

    async def get_available_margin(self) -> float:
        return float(await self._rest_call("get_fund_margin", lambda s: s.get_available_margin()))


__all__ = ["UpstoxMarketData", "UpstoxOrderGateway"]
