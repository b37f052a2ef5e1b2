from __future__ import annotations

import logging
import os
import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from condor.state import StrategyStatus


class EngineMetrics:
    """Prometheus collectors for the condor engine. Pass a registry to isolate tests."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry
        registry_kwargs = {"registry": registry} if registry is not None else {}
        self.engine_up = Gauge("condor_engine_up", "Engine up status", **registry_kwargs)
        self.heartbeat_ts = Gauge("condor_heartbeat_ts", "Unix timestamp of last heartbeat", **registry_kwargs)
        self.pnl = Gauge("condor_pnl_rupees", "Running strategy PnL", **registry_kwargs)
        self.peak_profit = Gauge("condor_peak_profit_rupees", "Max PnL seen this cycle", **registry_kwargs)
        self.peak_loss = Gauge("condor_peak_loss_rupees", "Min PnL seen this cycle", **registry_kwargs)
        self.status = Gauge("condor_status", "1 for the current engine status", ["status"], **registry_kwargs)
        self.open_legs = Gauge("condor_open_legs", "Legs in the active basket", **registry_kwargs)
        self.orders_total = Counter("condor_orders_total", "Leg orders executed", ["mode", "side"], **registry_kwargs)
        self.order_failures_total = Counter("condor_order_failures_total", "Leg orders that failed", **registry_kwargs)
        self.exits_total = Counter("condor_exits_total", "Exit-all actions", ["reason"], **registry_kwargs)
        self.adjustments_total = Counter(
            "condor_adjustments_total", "Adjustment attempts by outcome", ["outcome"], **registry_kwargs
        )
        self.margin_rejects_total = Counter("condor_margin_rejects_total", "Margin gate rejections", **registry_kwargs)
        self.dispatch_failures_total = Counter(
            "condor_dispatch_failures_total", "Effects that failed to apply", ["effect"], **registry_kwargs
        )
        self.dispatch_dropped_total = Counter(
            "condor_dispatch_dropped_total", "Effects dropped on a full queue", **registry_kwargs
        )
        self.dispatch_coalesced_total = Counter(
            "condor_dispatch_coalesced_total", "Store snapshots held back on a full queue", **registry_kwargs
        )
        self.ticks_total = Counter("condor_ticks_total", "Ticks applied", **registry_kwargs)
        self.bad_ticks_total = Counter("condor_bad_ticks_total", "Ticks dropped as malformed", **registry_kwargs)
        self.tick_latency_ms = Histogram(
            "condor_tick_latency_ms",
            "Tick processing latency in ms",
            buckets=(0.1, 0.5, 1, 2, 5, 10, 25, 50, 100, 250, 1000),
            **registry_kwargs,
        )
        self.config_sanity_ok = Gauge("condor_config_sanity_ok", "1 when config validation passed", **registry_kwargs)
        self.config_sanity_failures = Counter(
            "condor_config_sanity_failures_total", "Config validation failures", **registry_kwargs
        )

    def beat(self) -> None:
        self.heartbeat_ts.set(time.time())

    def set_status(self, status: StrategyStatus) -> None:
        for candidate in StrategyStatus:
            self.status.labels(status=candidate.value).set(1 if candidate is status else 0)

    def set_pnl(self, pnl: float, peak_profit: float, peak_loss: float) -> None:
        self.pnl.set(pnl)
        self.peak_profit.set(peak_profit)
        self.peak_loss.set(peak_loss)

    def record_order(self, *, virtual: bool, side: str) -> None:
        self.orders_total.labels(mode="virtual" if virtual else "live", side=side).inc()

    def record_exit(self, reason: str) -> None:
        # reasons carry rupee amounts; keep label cardinality bounded
        self.exits_total.labels(reason=reason.split(" ", 1)[0].lower()).inc()


def start_http_server_if_available(port: Optional[int] = None, *, port_env: str = "METRICS_PORT") -> bool:
    if port is None:
        raw = os.getenv(port_env)
        if not raw:
            return False
        try:
            port = int(raw)
        except ValueError:
            logging.getLogger("metrics").warning("Invalid %s=%s; metrics server disabled", port_env, raw)
            return False
    addr = os.getenv("METRICS_HOST", "0.0.0.0")
    start_http_server(port, addr=addr)
    return True


__all__ = ["EngineMetrics", "start_http_server_if_available"]
