from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from condor.clock import utc_now
from condor.dispatch import EffectDispatcher, Notify, OrderLog, SystemLog
from condor.errors import LegExecutionFailure
from condor.interfaces import OrderGateway
from condor.logging_utils import get_logger
from condor.metrics import EngineMetrics
from condor.state import Leg

LOG = get_logger("LegExecutor")


@dataclass(frozen=True)
class MarginCheck:
    required: float
    available: float

    @property
    def ok(self) -> bool:
        return self.available >= self.required


class MarginGate:
    """Compares basket margin against free funds. Live mode only."""

    def __init__(self, gateway: OrderGateway, *, metrics: Optional[EngineMetrics] = None):
        self._gateway = gateway
        self._metrics = metrics

    async def check(self, legs: Sequence[Leg]) -> MarginCheck:
        required = float(await self._gateway.get_basket_margin(list(legs)))
        available = float(await self._gateway.get_available_margin())
        result = MarginCheck(required=required, available=available)
        LOG.log_event(20, "margin_check", required=required, available=available, ok=result.ok, legs=len(legs))
        if not result.ok and self._metrics:
            self._metrics.margin_rejects_total.inc()
        return result


@dataclass(frozen=True)
class ExecutionReport:
    token: str
    side: str
    fill_price: float
    order_id: str
    virtual: bool


class LegExecutor:
    """
    Sends one leg to market.

    Virtual legs fill at their planned price after ``virtual_latency`` seconds.
    Live legs go to the gateway as market orders; for entries the broker's fill
    price replaces the planned ``entry_price``. Entry and adjustment legs are
    marked ``filled`` once executed so an exit knows what is actually open.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        dispatcher: EffectDispatcher,
        *,
        virtual_latency: float = 0.1,
        metrics: Optional[EngineMetrics] = None,
    ):
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._virtual_latency = max(virtual_latency, 0.0)
        self._metrics = metrics

    async def execute(self, leg: Leg, *, virtual: bool, purpose: str = "ENTRY") -> ExecutionReport:
        if virtual:
            report = await self._execute_virtual(leg, purpose)
        else:
            report = await self._execute_live(leg, purpose)
        if purpose != "EXIT":
            leg.filled = True
        return report

    async def _execute_virtual(self, leg: Leg, purpose: str) -> ExecutionReport:
        if self._virtual_latency:
            await asyncio.sleep(self._virtual_latency)
        price = leg.entry_price if purpose != "EXIT" else (leg.ltp or leg.entry_price)
        report = ExecutionReport(leg.token, leg.side, price, f"VIRTUAL-{uuid.uuid4().hex[:12]}", True)
        self._record(leg, report, purpose)
        self._dispatcher.dispatch(SystemLog(f"[VIRTUAL] {leg.side} {leg.symbol} @ {price:.2f}"))
        return report

    async def _execute_live(self, leg: Leg, purpose: str) -> ExecutionReport:
        try:
            fill = await self._gateway.place_order(leg)
        except Exception as exc:
            LOG.log_event(40, "leg_execution_failed", token=leg.token, symbol=leg.symbol, side=leg.side, error=str(exc))
            if self._metrics:
                self._metrics.order_failures_total.inc()
            self._dispatcher.dispatch(
                OrderLog(self._entry(leg, price=leg.entry_price, order_id=None, status="FAILED", purpose=purpose, note=str(exc))),
                SystemLog(f"Order failed {leg.side} {leg.symbol}: {exc}"),
                Notify("Order Failed", f"{leg.side} {leg.symbol}: {exc}", level="ERROR"),
            )
            raise LegExecutionFailure(
                f"{leg.side} {leg.symbol} failed: {exc}", context={"token": leg.token, "purpose": purpose}
            ) from exc
        if purpose != "EXIT" and fill.fill_price > 0:
            leg.entry_price = fill.fill_price
            leg.ltp = leg.ltp or fill.fill_price
        report = ExecutionReport(leg.token, leg.side, fill.fill_price, fill.order_id, False)
        self._record(leg, report, purpose)
        self._dispatcher.dispatch(
            SystemLog(f"[LIVE] {leg.side} {leg.symbol} @ {fill.fill_price:.2f} ({fill.order_id})"),
            Notify("Order Filled", f"{leg.side} {leg.quantity} {leg.symbol} @ {fill.fill_price:.2f}"),
        )
        return report

    def _record(self, leg: Leg, report: ExecutionReport, purpose: str) -> None:
        LOG.log_event(
            20,
            "leg_executed",
            token=leg.token,
            symbol=leg.symbol,
            side=leg.side,
            qty=leg.quantity,
            price=report.fill_price,
            order_id=report.order_id,
            virtual=report.virtual,
            purpose=purpose,
        )
        if self._metrics:
            self._metrics.record_order(virtual=report.virtual, side=leg.side)
        self._dispatcher.dispatch(
            OrderLog(self._entry(leg, price=report.fill_price, order_id=report.order_id, status="COMPLETE", purpose=purpose, virtual=report.virtual))
        )

    @staticmethod
    def _entry(
        leg: Leg,
        *,
        price: float,
        order_id: Optional[str],
        status: str,
        purpose: str,
        virtual: bool = False,
        note: Optional[str] = None,
    ) -> dict:
        return {
            "ts": utc_now().isoformat(),
            "token": leg.token,
            "symbol": leg.symbol,
            "side": leg.side,
            "quantity": leg.quantity,
            "price": price,
            "status": status,
            "order_type": "VIRTUAL" if virtual else "LIVE",
            "order_id": order_id,
            "purpose": purpose,
            "note": note,
        }


__all__ = ["ExecutionReport", "LegExecutor", "MarginCheck", "MarginGate"]
