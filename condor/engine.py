from __future__ import annotations

import asyncio
import datetime as dt
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from prometheus_client import CollectorRegistry

from condor import recovery
from condor.clock import MarketHours, now as engine_now
from condor.config import IST, EngineConfig, parse_time_str
from condor.dispatch import (
    EffectDispatcher,
    Notify,
    OrderLog,
    PersistLegs,
    PersistState,
    PnlSnapshot,
    PurgeLogs,
    SystemLog,
    TradeRecord,
)
from condor.errors import AuthRequired, DataUnavailable, EngineError, LegExecutionFailure
from condor.events import EventBus, PriceUpdate, StateChange, StrategyExit
from condor.execution import LegExecutor, MarginGate
from condor.expiry import atm_strike, format_expiry, is_expiry_day, option_symbol, parse_expiry, trading_expiry
from condor.interfaces import ChainEntry, MarketDataClient, NotificationSink, OrderGateway, PersistenceStore
from condor.logging_utils import RateLimitedLogger, get_logger
from condor.metrics import EngineMetrics
from condor.monitor import RiskMonitor
from condor.selection import PricedOption, SelectionTargets, build_basket, hedge_beyond, summarize
from condor.state import (
    MONITORED_STATUSES,
    Leg,
    StrategyState,
    StrategyStatus,
    can_transition,
    compute_pnl,
)

LOG = get_logger("StrategyEngine")

_ENTRY_BLOCKING = (StrategyStatus.ENTRY_DONE, StrategyStatus.ACTIVE)
_SCHEDULE_BLOCKING = (StrategyStatus.ENTRY_DONE, StrategyStatus.ACTIVE, StrategyStatus.FORCE_EXITED)

Clock = Callable[[], dt.datetime]


@dataclass(frozen=True)
class OrderResult:
    status: str
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class TriggerTimes:
    exit: dt.time
    select: dt.time
    entry: dt.time


class StrategyEngine:
    """
    Single owner of ``StrategyState`` for the iron condor.

    Every mutating entry point (ticks, scheduled triggers, operator commands)
    runs under one ``asyncio.Lock``, so an operation that awaits the broker
    finishes before the next one sees the state. Ticks arriving meanwhile
    wait in a FIFO queue. Persistence, notifications and the system log are
    handed to the ``EffectDispatcher`` and never block or fail a trade.
    """

    def __init__(
        self,
        *,
        config: EngineConfig,
        market: MarketDataClient,
        gateway: OrderGateway,
        store: PersistenceStore,
        dispatcher: EffectDispatcher,
        notifier: Optional[NotificationSink] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[EngineMetrics] = None,
        clock: Optional[Clock] = None,
    ):
        strat = config.strategy
        self.cfg = config
        self.state = StrategyState(
            is_virtual=strat.is_virtual,
            entry_time=strat.entry_time,
            exit_time=strat.exit_time,
            target_pnl=strat.target_pnl,
            stop_loss_pnl=strat.stop_loss_pnl,
            telegram_token=config.secrets.telegram_bot_token,
            telegram_chat_id=config.secrets.telegram_chat_id,
        )
        self.bus = bus or EventBus()
        self._market = market
        self._gateway = gateway
        self._store = store
        self._effects = dispatcher
        self._notifier = notifier
        self._metrics = metrics or EngineMetrics(CollectorRegistry())
        self._clock: Clock = clock or (lambda: engine_now(IST))
        self._lock = asyncio.Lock()
        self._monitor = RiskMonitor(
            confirm_seconds=strat.confirm_seconds,
            adjustment_trigger=strat.adjustment_trigger_price,
        )
        self._margin = MarginGate(gateway, metrics=self._metrics)
        self._executor = LegExecutor(
            gateway,
            dispatcher,
            virtual_latency=strat.virtual_fill_latency_seconds,
            metrics=self._metrics,
        )
        self._targets = SelectionTargets.from_config(strat)
        self._hours = MarketHours(
            parse_time_str(config.schedule.market_open),
            parse_time_str(config.schedule.market_close),
        )
        self._ticks: asyncio.Queue = asyncio.Queue()
        self._tick_task: Optional[asyncio.Task] = None
        self._subscribed: set[str] = set()
        self._last_persist = 0.0
        self._last_snapshot_pnl: Optional[float] = None
        self._test_date: Optional[dt.date] = None
        self._selection_idle = asyncio.Event()
        self._selection_idle.set()
        self._bad_ticks = RateLimitedLogger(LOG, 5.0)
        self._hydrated = False

    # ------------------------------------------------------------------ lifecycle
    @property
    def status(self) -> StrategyStatus:
        return self.state.status

    async def start(self) -> None:
        await self._effects.start()
        self._market.set_tick_handler(self.enqueue_tick)
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._consume_ticks(), name="condor-ticks")
        self._metrics.engine_up.set(1)

    async def stop(self) -> None:
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        if self._hydrated:
            self._persist()
            self._persist_legs()
        self._metrics.engine_up.set(0)
        await self._effects.drain()
        await self._effects.stop()

    # ---------------------------------------------------------------------- ticks
    def enqueue_tick(self, token: str, price: float) -> None:
        """Feed callback; must be called on the event-loop thread."""

        self._ticks.put_nowait((token, price))

    async def _consume_ticks(self) -> None:
        while True:
            token, price = await self._ticks.get()
            try:
                await self.handle_tick(token, price)
            finally:
                self._ticks.task_done()

    async def handle_tick(self, token: str, price: Any) -> None:
        async with self._lock:
            started = time.perf_counter()
            try:
                await self._apply_tick(str(token), price)
            except Exception as exc:
                self._metrics.bad_ticks_total.inc()
                LOG.log_event(40, "tick_failed", token=token, error=str(exc))
            finally:
                self._metrics.tick_latency_ms.observe((time.perf_counter() - started) * 1000.0)

    async def _apply_tick(self, token: str, price: Any) -> None:
        try:
            value = float(price)
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value) or value < 0:
            self._metrics.bad_ticks_total.inc()
            self._bad_ticks.log_event(30, "bad_tick", key=token, token=token, price=price)
            return
        leg = self.state.find_leg(token)
        if leg is None:
            return
        leg.ltp = value
        state = self.state
        state.recompute_pnl()
        self._metrics.ticks_total.inc()
        self._metrics.set_pnl(state.pnl, state.peak_profit, state.peak_loss)
        if state.status in MONITORED_STATUSES and state.legs and not state.is_paused:
            now_ts = self._now().timestamp()
            signal = self._monitor.exit_signal(state, now_ts)
            if signal is not None:
                LOG.log_event(30, "exit_confirmed", kind=signal.kind, reason=signal.reason, pnl=state.pnl)
                await self._exit_all(signal.reason, forced=True)
                return
            for due in self._monitor.due_adjustments(state, now_ts):
                await self._adjust(due)
        self.bus.publish_nowait("price", PriceUpdate(token, value, state.pnl, self._now()))
        self._persist(throttled=True)

    # ------------------------------------------------------------------ selection
    async def select_strikes(self, expiry: Optional[str] = None) -> List[Leg]:
        async with self._lock:
            return await self._select_strikes(expiry)

    async def _select_strikes(self, expiry: Optional[str] = None) -> List[Leg]:
        if self.state.is_trade_placed or self.state.filled_legs():
            raise EngineError("Positions are open; exit them before selecting new strikes", code="invalid_state")
        market_cfg = self.cfg.market
        if not self._market.is_authenticated():
            raise AuthRequired("Market data session is not authenticated")
        expiries = await self._market.get_expiries()
        if not expiries:
            raise DataUnavailable("No expiries configured")
        target = trading_expiry(expiries, expiry)
        try:
            expiry_date = parse_expiry(target or "")
        except ValueError as exc:
            raise DataUnavailable(str(exc)) from exc
        spot = (await self._market.get_quote(market_cfg.index_exchange, market_cfg.index_token)).last_price
        if not spot or spot <= 0:
            raise DataUnavailable(f"No spot price for {market_cfg.index_symbol}")
        atm = atm_strike(spot, market_cfg.strike_step)
        anchor = option_symbol(market_cfg.index_symbol, expiry_date, "CE", atm)
        chain = await self._market.get_option_chain(market_cfg.option_exchange, anchor, atm, market_cfg.chain_window)
        if not chain:
            raise DataUnavailable(f"Empty option chain around {anchor}")
        priced = await self._price_chain(chain)
        if not priced:
            raise DataUnavailable(f"No live quotes for the {len(chain)} strikes around {anchor}")
        legs = build_basket(priced, self._targets)
        if not legs:
            raise DataUnavailable("No strikes matched the premium targets")

        state = self.state
        state.legs = legs
        state.start_cycle()
        state.recompute_pnl()
        state.engine_activity = f"Selected {len(legs)} legs for {format_expiry(expiry_date)}"
        state.next_action = "Place order"
        self._persist_legs()
        self._persist()
        await self._sync_subscriptions()
        self._refresh_metrics()
        LOG.log_event(20, "strikes_selected", expiry=target, spot=spot, atm=atm, legs=len(legs), chain=len(chain))
        self._log(f"Strikes selected for {target}: {len(legs)} legs (spot {spot:.2f}, ATM {atm})")
        self._notify(
            "Strikes Selected",
            f"Expiry {target}\nCE: {summarize(legs, 'CE')}\nPE: {summarize(legs, 'PE')}",
        )
        return list(legs)

    async def _price_chain(self, chain: Sequence[ChainEntry]) -> List[PricedOption]:
        exchange = self.cfg.market.option_exchange
        priced: List[PricedOption] = []
        for entry in chain:
            try:
                quote = await self._market.get_quote(exchange, entry.token)
            except AuthRequired:
                raise
            except Exception as exc:
                LOG.log_event(30, "quote_failed", token=entry.token, symbol=entry.symbol, error=str(exc))
                continue
            if not quote.last_price or quote.last_price <= 0:
                continue
            priced.append(
                PricedOption(
                    token=entry.token,
                    symbol=entry.symbol,
                    option_type=entry.option_type,
                    strike=entry.strike,
                    price=quote.last_price,
                    lot_size=quote.lot_size,
                )
            )
        return priced

    # -------------------------------------------------------------------- orders
    async def place_order(self, *, dry_run: bool = False) -> OrderResult:
        async with self._lock:
            return await self._place_order(dry_run=dry_run)

    def _authenticated(self) -> bool:
        if not self._market.is_authenticated():
            return False
        return self.state.is_virtual or self._gateway.is_authenticated()

    async def _place_order(self, *, dry_run: bool = False) -> OrderResult:
        state = self.state
        if not self._authenticated():
            LOG.log_event(40, "order_blocked", reason="not_authenticated")
            return OrderResult("failed", "Not Authenticated")
        if dry_run:
            return self._dry_run()
        if state.is_paused:
            self._log("Order blocked: engine is paused", level=30)
            return OrderResult("failed", "Paused")
        if state.status in _ENTRY_BLOCKING:
            LOG.log_event(20, "order_skipped", reason="already_active", status=state.status.value)
            return OrderResult("success", "Already Active")
        if state.is_trade_placed:
            LOG.log_event(20, "order_skipped", reason="trade_already_placed")
            return OrderResult("success", "Trade Already Placed")
        if state.status == StrategyStatus.FORCE_EXITED:
            self._log("Order blocked: force exited, reset required", level=30)
            return OrderResult("failed", "Reset Required")
        if not state.legs:
            self._log("Order blocked: no strikes selected", level=30)
            return OrderResult("failed", "No Strikes Selected")
        if not state.is_virtual:
            rejection = await self._margin_gate(state.legs, context="Entry")
            if rejection:
                return OrderResult("failed", rejection)

        ordered = [leg for leg in state.legs if leg.side == "BUY"] + [leg for leg in state.legs if leg.side == "SELL"]
        state.engine_activity = "Placing orders"
        done = 0
        try:
            for leg in ordered:
                await self._executor.execute(leg, virtual=state.is_virtual, purpose="ENTRY")
                done += 1
        except LegExecutionFailure as exc:
            state.engine_activity = f"Entry aborted after {done}/{len(ordered)} legs"
            state.next_action = "Operator intervention required"
            self._persist_legs()
            self._persist()
            self._log(f"Entry aborted after {done}/{len(ordered)} legs: {exc}", level=40)
            self._notify(
                "Entry Aborted",
                f"{done}/{len(ordered)} legs filled before failure: {exc}\nPartial position left open.",
                level="CRITICAL",
            )
            raise

        state.is_trade_placed = True
        state.recompute_pnl()
        self._set_status(StrategyStatus.ENTRY_DONE, "orders filled")
        await self._sync_subscriptions()
        self._set_status(StrategyStatus.ACTIVE, "monitoring started")
        state.engine_activity = f"Monitoring {len(state.legs)} legs"
        state.next_action = f"Exit at target ₹{state.target_pnl:g} / stop ₹{state.stop_loss_pnl:g}"
        self._persist_legs()
        self._persist()
        self._refresh_metrics()
        mode = "VIRTUAL" if state.is_virtual else "LIVE"
        self._log(f"Trade placed ({mode}): {len(ordered)} legs")
        self._notify("Trade Placed", f"{mode} {len(ordered)} legs\nCE: {summarize(state.legs, 'CE')}\nPE: {summarize(state.legs, 'PE')}")
        return OrderResult("success")

    def _dry_run(self) -> OrderResult:
        legs = self.state.legs
        if not legs:
            return OrderResult("failed", "No Strikes Selected")
        ordered = [leg for leg in legs if leg.side == "BUY"] + [leg for leg in legs if leg.side == "SELL"]
        stamp = self._now().isoformat()
        for leg in ordered:
            self._effects.dispatch(
                OrderLog(
                    {
                        "ts": stamp,
                        "token": leg.token,
                        "symbol": leg.symbol,
                        "side": leg.side,
                        "quantity": leg.quantity,
                        "price": leg.entry_price,
                        "status": "PLANNED",
                        "order_type": "DRY_RUN",
                        "order_id": None,
                        "purpose": "ENTRY",
                        "note": None,
                    }
                )
            )
        self._log(f"Dry run: {len(ordered)} orders planned")
        return OrderResult("success", "Dry Run")

    async def _margin_gate(self, legs: Sequence[Leg], *, context: str) -> Optional[str]:
        """Returns a rejection reason, or None when funds cover ``legs``."""

        try:
            check = await self._margin.check(legs)
        except Exception as exc:
            self._log(f"{context} margin check failed: {exc}", level=40)
            self._notify("Margin Check Failed", f"{context}: {exc}", level="ERROR")
            return "Margin Check Failed"
        self.state.required_margin = check.required
        self.state.available_margin = check.available
        if check.ok:
            return None
        self._log(f"{context} blocked: required {check.required:.2f}, available {check.available:.2f}", level=30)
        self._notify(
            "Insufficient Margin",
            f"{context}: required ₹{check.required:,.2f}, available ₹{check.available:,.2f}",
            level="WARNING",
        )
        self._persist()
        return "Insufficient Margin"

    # --------------------------------------------------------------- adjustments
    async def _adjust(self, token: str) -> None:
        state = self.state
        short = state.find_leg(token)
        if short is None or short.adjusted:
            return
        short.adjusted = True
        market_cfg = self.cfg.market
        self._log(f"Adjustment triggered: {short.symbol} above ₹{self._monitor.adjustment_trigger:g}")
        try:
            chain = await self._market.get_option_chain(
                market_cfg.option_exchange, short.symbol, short.strike, market_cfg.adjustment_window
            )
            candidate = hedge_beyond(chain, short, set(state.tokens()))
            if candidate is None:
                raise DataUnavailable(f"No strike beyond {short.symbol}")
            quote = await self._market.get_quote(market_cfg.option_exchange, candidate.token)
            if not quote.last_price or quote.last_price <= 0:
                raise DataUnavailable(f"No quote for {candidate.symbol}")
            hedge = Leg(
                token=candidate.token,
                symbol=candidate.symbol,
                option_type=candidate.option_type,
                side="BUY",
                strike=candidate.strike,
                entry_price=quote.last_price,
                ltp=quote.last_price,
                quantity=short.quantity,
            )
            if not state.is_virtual:
                rejection = await self._margin_gate([hedge], context="Adjustment")
                if rejection:
                    self._metrics.adjustments_total.labels(outcome="skipped").inc()
                    self._persist_legs()
                    return
            await self._executor.execute(hedge, virtual=state.is_virtual, purpose="ADJUST")
        except Exception as exc:
            self._metrics.adjustments_total.labels(outcome="failed").inc()
            self._log(f"Adjustment for {short.symbol} failed: {exc}", level=40)
            self._notify("Adjustment Failed", f"{short.symbol}: {exc}", level="ERROR")
            self._persist_legs()
            return
        state.legs.append(hedge)
        state.recompute_pnl()
        self._persist_legs()
        self._persist()
        await self._sync_subscriptions()
        self._refresh_metrics()
        self._metrics.adjustments_total.labels(outcome="executed").inc()
        self._log(f"Adjustment executed: BUY {hedge.symbol} @ {hedge.entry_price:.2f} against {short.symbol}")
        self._notify("Adjustment Executed", f"BUY {hedge.quantity} {hedge.symbol} @ {hedge.entry_price:.2f}\nProtecting {short.symbol}")

    # --------------------------------------------------------------------- exits
    async def exit_all(self, reason: str = "Manual Exit") -> None:
        async with self._lock:
            await self._exit_all(reason, forced=False)

    async def manual_exit(self) -> None:
        """Kill switch: flatten everything, pause, and require a reset."""

        async with self._lock:
            await self._exit_all("MANUAL_KILL_SWITCH", forced=True)
            self.state.is_paused = True
            self.state.next_action = "Reset required"
            self._persist()

    async def _exit_all(self, reason: str, *, forced: bool) -> None:
        state = self.state
        selected = len(state.legs)
        legs = state.filled_legs()
        final_pnl = compute_pnl(legs)
        failures: List[str] = []
        if selected > len(legs):
            self._log(f"Clearing {selected - len(legs)} unfilled legs without exit orders", level=30)
        # shorts first so a half-finished exit never leaves naked shorts
        ordered = [leg for leg in legs if leg.side == "SELL"] + [leg for leg in legs if leg.side == "BUY"]
        for leg in ordered:
            try:
                await self._executor.execute(leg.closing(), virtual=state.is_virtual, purpose="EXIT")
            except LegExecutionFailure as exc:
                failures.append(leg.symbol)
                LOG.log_event(40, "exit_leg_failed", token=leg.token, symbol=leg.symbol, error=str(exc))
        if legs:
            self._effects.dispatch(
                TradeRecord(
                    {
                        "ts": self._now().isoformat(),
                        "reason": reason,
                        "pnl": final_pnl,
                        "peak_profit": state.peak_profit,
                        "peak_loss": state.peak_loss,
                        "is_virtual": state.is_virtual,
                        "legs": [leg.to_dict() for leg in legs],
                    }
                )
            )
        state.legs = []
        state.is_trade_placed = False
        state.monitoring.clear()
        state.recompute_pnl()
        await self._sync_subscriptions()
        self._persist_legs()
        self._set_status(StrategyStatus.FORCE_EXITED if forced else StrategyStatus.IDLE, reason)
        state.engine_activity = f"Exited: {reason}"
        state.next_action = "Reset required" if forced else ""
        self._persist()
        self._refresh_metrics()
        self._metrics.record_exit(reason)
        self.bus.publish_nowait("exit", StrategyExit(reason, final_pnl, state.status.value, self._now()))
        self._log(f"Strategy exited: {reason}, final PnL {final_pnl:.2f}")
        body = f"Reason: {reason}\nFinal PnL: ₹{final_pnl:,.2f}"
        if failures:
            body += f"\nExit orders failed for: {', '.join(failures)} - check broker positions"
        self._notify("Strategy Closed", body, level="WARNING" if failures else "INFO")

    # ------------------------------------------------------------------ schedule
    def trigger_times(self) -> TriggerTimes:
        entry = parse_time_str(self.state.entry_time)
        lead = dt.timedelta(seconds=self.cfg.strategy.selection_lead_seconds)
        select = (dt.datetime.combine(self._today(), entry) - lead).time()
        return TriggerTimes(exit=parse_time_str(self.state.exit_time), select=select, entry=entry)

    async def is_expiry_day(self) -> bool:
        return is_expiry_day(await self._safe_expiries(), self._today())

    async def evaluate_day(self) -> bool:
        """Daily re-evaluation. Returns True when today is an expiry day."""

        async with self._lock:
            state = self.state
            expiry_day = is_expiry_day(await self._safe_expiries(), self._today())
            self._effects.dispatch(PurgeLogs(self.cfg.strategy.log_retention_days))
            if state.status == StrategyStatus.FORCE_EXITED:
                self._log("Daily check: force exited, waiting for operator reset", level=30)
            elif expiry_day:
                times = self.trigger_times()
                # only the morning check rolls; after the exit the basket held is the new one
                pre_roll = self._now().time() < min(times.exit, times.entry)
                if pre_roll and state.status in (StrategyStatus.IDLE, StrategyStatus.ACTIVE):
                    self._set_status(StrategyStatus.WAITING_FOR_EXPIRY, "expiry day")
                state.engine_activity = "Expiry day"
                state.next_action = f"Exit at {times.exit:%H:%M}, roll at {times.entry:%H:%M}"
                self._log(f"Daily check: expiry day, exit {times.exit:%H:%M} and roll {times.entry:%H:%M}")
                self._notify("Expiry Day", state.next_action)
            elif state.legs:
                self._set_status(StrategyStatus.ACTIVE, "holding positions")
                state.engine_activity = f"Monitoring {len(state.legs)} legs"
                state.next_action = "Hold until expiry day"
                self._log("Daily check: not expiry day, holding positions")
            else:
                self._set_status(StrategyStatus.IDLE, "no positions")
                state.engine_activity = "Idle"
                state.next_action = "Wait for expiry day"
                self._log("Daily check: not expiry day, no positions")
            self._persist()
            return expiry_day

    async def scheduled_exit(self) -> None:
        async with self._lock:
            if self.state.legs:
                await self._exit_all("Expiry Day Exit", forced=False)
            if self._set_status(StrategyStatus.EXIT_DONE, "expiry exit time"):
                self.state.engine_activity = "Expiry exit done"
                self.state.next_action = "Strike selection"
            self._persist()

    async def scheduled_select_strikes(self) -> None:
        self._selection_idle.clear()
        try:
            blocker = self._schedule_blocker()
            if blocker:
                self._log(f"Scheduled selection skipped: {blocker}")
                return
            settle = self.cfg.strategy.selection_settle_seconds
            if settle > 0:
                await asyncio.sleep(settle)
            async with self._lock:
                blocker = self._schedule_blocker()
                if blocker:
                    self._log(f"Scheduled selection skipped: {blocker}")
                    return
                await self._select_strikes()
        finally:
            self._selection_idle.set()

    async def scheduled_entry(self) -> None:
        await self._selection_idle.wait()
        async with self._lock:
            state = self.state
            if state.status in _SCHEDULE_BLOCKING:
                self._log(f"Scheduled entry skipped: status {state.status.value}")
                return
            if not state.legs and not state.is_trade_placed:
                # the select trigger was missed, e.g. a restart just before entry
                self._log("Scheduled entry: no basket selected, selecting now", level=30)
                try:
                    await self._select_strikes()
                except EngineError as exc:
                    self._log(f"Scheduled entry failed: {exc}", level=40)
                    self._notify("Scheduled Entry Failed", str(exc), level="ERROR")
                    return
            result = await self._place_order()
            if not result.ok:
                self._log(f"Scheduled entry failed: {result.reason}", level=40)
                self._notify("Scheduled Entry Failed", result.reason or "unknown", level="ERROR")

    def _schedule_blocker(self) -> Optional[str]:
        state = self.state
        if state.status in _SCHEDULE_BLOCKING:
            return f"status {state.status.value}"
        if state.is_trade_placed or state.filled_legs():
            return "positions open"
        return None

    async def heartbeat(self) -> None:
        async with self._lock:
            now = self._now()
            if not self._hours.is_open(now):
                return
            state = self.state
            state.last_heartbeat = now.isoformat()
            self._metrics.beat()
            if not state.is_virtual and state.legs and self._gateway.is_authenticated():
                try:
                    state.required_margin = float(await self._gateway.get_basket_margin(list(state.legs)))
                    state.available_margin = float(await self._gateway.get_available_margin())
                except Exception as exc:
                    LOG.log_event(30, "margin_refresh_failed", error=str(exc))
            if state.legs and state.pnl != self._last_snapshot_pnl:
                self._last_snapshot_pnl = state.pnl
                self._effects.dispatch(PnlSnapshot(state.pnl))
            self._persist()

    # ------------------------------------------------------------------ controls
    async def pause(self) -> None:
        async with self._lock:
            if self.state.is_paused:
                return
            self.state.is_paused = True
            self.state.engine_activity = "Paused"
            self._persist()
            self._log("Monitoring paused")
            self._notify("Monitoring Paused", "Exit and adjustment checks are suspended")

    async def resume_monitoring(self) -> None:
        async with self._lock:
            state = self.state
            if not state.is_paused:
                return
            state.is_paused = False
            state.monitoring.clear()
            state.engine_activity = f"Monitoring {len(state.legs)} legs" if state.legs else "Idle"
            self._persist()
            self._log("Monitoring resumed")
            self._notify("Monitoring Resumed", f"PnL ₹{state.pnl:,.2f}")
            if state.status in MONITORED_STATUSES and state.legs:
                # arms the confirmation timers from the current pnl
                self._monitor.exit_signal(state, self._now().timestamp())

    async def update_settings(self, **fields: Any) -> Dict[str, Any]:
        async with self._lock:
            state = self.state
            if "entry_time" in fields:
                parse_time_str(str(fields["entry_time"]))
            if "exit_time" in fields:
                parse_time_str(str(fields["exit_time"]))
            if fields.get("stop_loss_pnl") is not None and float(fields["stop_loss_pnl"]) >= 0:
                raise ValueError("stop_loss_pnl must be negative")
            if fields.get("target_pnl") is not None and float(fields["target_pnl"]) < 0:
                raise ValueError("target_pnl must not be negative")
            changed: Dict[str, Any] = {}
            for name in ("entry_time", "exit_time"):
                if fields.get(name):
                    changed[name] = str(fields[name]).strip()
            for name in ("target_pnl", "stop_loss_pnl"):
                if fields.get(name) is not None:
                    changed[name] = float(fields[name])
            if fields.get("is_virtual") is not None:
                changed["is_virtual"] = bool(fields["is_virtual"])
                if changed["is_virtual"] != state.is_virtual and state.is_trade_placed:
                    self._log("Trading mode changed while a trade is open", level=30)
            for name in ("telegram_token", "telegram_chat_id"):
                if name in fields:
                    changed[name] = fields[name] or None
            unknown = set(fields) - set(changed) - {"entry_time", "exit_time", "target_pnl", "stop_loss_pnl", "is_virtual"}
            if unknown:
                raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
            for name, value in changed.items():
                setattr(state, name, value)
            if self._notifier and ("telegram_token" in changed or "telegram_chat_id" in changed):
                self._notifier.set_telegram_credentials(state.telegram_token, state.telegram_chat_id)
            self._persist()
            visible = {key: value for key, value in changed.items() if not key.startswith("telegram")}
            self._log(f"Settings updated: {visible}")
            return state.snapshot()

    async def reset(self) -> None:
        async with self._lock:
            state = self.state
            if state.status != StrategyStatus.FORCE_EXITED:
                raise EngineError(
                    f"Reset is only allowed from FORCE_EXITED (status {state.status.value})", code="invalid_state"
                )
            state.legs = []
            state.is_trade_placed = False
            state.is_paused = False
            state.start_cycle()
            await self._sync_subscriptions()
            self._persist_legs()
            self._set_status(StrategyStatus.IDLE, "operator reset")
            state.engine_activity = "Idle"
            state.next_action = ""
            self._persist()
            self._refresh_metrics()
            self._log("Engine reset to IDLE")
            self._notify("Engine Reset", "Status IDLE, monitoring cleared")

    def set_test_date(self, value: Optional[str]) -> Optional[str]:
        self._test_date = parse_expiry(value) if value else None
        label = format_expiry(self._test_date) if self._test_date else None
        LOG.log_event(30, "test_date_set", date=label)
        return label

    def snapshot(self) -> Dict[str, Any]:
        payload = self.state.snapshot()
        payload["test_date"] = format_expiry(self._test_date) if self._test_date else None
        return payload

    # -------------------------------------------------------------------- resume
    async def resume(self) -> StrategyStatus:
        """Hydrate from the store, refresh prices and pick up where the last run stopped."""

        async with self._lock:
            state = self.state
            try:
                row = await asyncio.to_thread(self._store.get_engine_state)
                rows = await asyncio.to_thread(self._store.get_legs)
            except Exception as exc:
                state.status = StrategyStatus.IDLE
                state.engine_activity = "Resume Failed"
                LOG.log_event(40, "resume_failed", error=str(exc))
                self._notify("Resume Failed", str(exc), level="ERROR")
                return state.status
            self._hydrated = True
            if row:
                state.apply_persisted(row)
            if self._notifier:
                self._notifier.set_telegram_credentials(state.telegram_token, state.telegram_chat_id)
            state.legs = [Leg.from_dict(item) for item in rows]
            state.monitoring.clear()
            await self._refresh_ltps()
            state.recompute_pnl()

            now = self._now()
            times = self.trigger_times()
            plan = recovery.plan_recovery(
                has_legs=bool(state.legs),
                persisted_status=state.status,
                expiry_day=is_expiry_day(await self._safe_expiries(), self._today()),
                now=now.time(),
                exit_time=times.exit,
                selection_time=times.select,
            )
            LOG.log_event(20, "resume_plan", action=plan.action, status=plan.status.value, legs=len(state.legs))
            if plan.action == recovery.LATE_EXIT:
                await self._exit_all("Late Expiry Exit", forced=False)
            elif state.legs:
                state.is_trade_placed = all(leg.filled for leg in state.legs)
                await self._sync_subscriptions()
            self._set_status(plan.status, "resume", force=True)
            state.engine_activity = plan.activity
            self._persist_legs()
            self._persist()
            self._refresh_metrics()
            self._log(f"Engine resumed: {state.status.value}, {len(state.legs)} legs, PnL {state.pnl:.2f}")
            mode = "VIRTUAL" if state.is_virtual else "LIVE"
            self._notify(
                "Engine Started",
                f"{mode} | Status {state.status.value} | Legs {len(state.legs)} | PnL ₹{state.pnl:,.2f}",
            )
            return state.status

    async def _refresh_ltps(self) -> None:
        exchange = self.cfg.market.option_exchange
        for leg in self.state.legs:
            try:
                quote = await self._market.get_quote(exchange, leg.token)
            except Exception as exc:
                LOG.log_event(30, "ltp_refresh_failed", token=leg.token, error=str(exc))
                continue
            if quote.last_price and quote.last_price > 0:
                leg.ltp = quote.last_price

    # ------------------------------------------------------------------- helpers
    def _now(self) -> dt.datetime:
        return self._clock()

    def _today(self) -> dt.date:
        return self._test_date or self._now().date()

    async def _safe_expiries(self) -> List[str]:
        try:
            return list(await self._market.get_expiries())
        except Exception as exc:
            LOG.log_event(40, "expiries_unavailable", error=str(exc))
            return []

    def _set_status(self, new: StrategyStatus, reason: str, *, force: bool = False) -> bool:
        prev = self.state.status
        if prev == new:
            return True
        if not force and not can_transition(prev, new):
            LOG.log_event(30, "illegal_transition", prev=prev.value, new=new.value, reason=reason)
            return False
        self.state.status = new
        LOG.log_event(20, "status_changed", prev=prev.value, new=new.value, reason=reason)
        self._metrics.set_status(new)
        self.bus.publish_nowait("state", StateChange(prev.value, new.value, reason, self._now()))
        self._persist()
        return True

    async def _sync_subscriptions(self) -> None:
        desired = set(self.state.tokens())
        removed = sorted(self._subscribed - desired)
        added = sorted(desired - self._subscribed)
        try:
            if removed:
                await self._market.unsubscribe(removed)
                self._subscribed.difference_update(removed)
            if added:
                await self._market.subscribe(added)
                self._subscribed.update(added)
        except Exception as exc:
            self._log(f"Market feed subscription failed: {exc}", level=40)
            self._notify("Feed Subscription Failed", str(exc), level="ERROR")

    def _persist(self, *, throttled: bool = False) -> None:
        now = time.monotonic()
        if throttled and now - self._last_persist < self.cfg.strategy.persist_interval_seconds:
            return
        self._last_persist = now
        self._effects.dispatch(PersistState(self.state.persisted_fields()))

    def _persist_legs(self) -> None:
        self._effects.dispatch(PersistLegs(tuple(leg.to_dict() for leg in self.state.legs)))

    def _refresh_metrics(self) -> None:
        state = self.state
        self._metrics.open_legs.set(len(state.legs))
        self._metrics.set_pnl(state.pnl, state.peak_profit, state.peak_loss)
        self._metrics.set_status(state.status)

    def _log(self, message: str, *, level: int = 20) -> None:
        LOG.log_event(level, "engine_log", message=message)
        self._effects.dispatch(SystemLog(message))

    def _notify(self, title: str, body: str, *, level: str = "INFO") -> None:
        self._effects.dispatch(Notify(title, body, level=level))


__all__ = ["OrderResult", "StrategyEngine", "TriggerTimes"]
