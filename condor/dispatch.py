from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from condor.interfaces import NotificationSink, PersistenceStore
from condor.logging_utils import get_logger
from condor.metrics import EngineMetrics

LOG = get_logger("EffectDispatcher")


@dataclass(frozen=True)
class Notify:
    title: str
    body: str
    level: str = "INFO"
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PersistState:
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class PersistLegs:
    legs: Tuple[Mapping[str, Any], ...]


@dataclass(frozen=True)
class OrderLog:
    entry: Mapping[str, Any]


@dataclass(frozen=True)
class SystemLog:
    message: str


@dataclass(frozen=True)
class TradeRecord:
    entry: Mapping[str, Any]


@dataclass(frozen=True)
class PnlSnapshot:
    pnl: float


@dataclass(frozen=True)
class PurgeLogs:
    days: int


_STOP = object()


class EffectDispatcher:
    """
    Applies side effects off the trading path.

    Store writes and notifications run on separate single-worker lanes so a
    slow webhook never delays persistence. Each lane keeps submission order.
    Failures are logged and counted, never raised back to the engine. When the
    store lane is full, state and position snapshots are held back and
    coalesced (the newest wins) rather than dropped; other effects are dropped.
    """

    def __init__(
        self,
        store: PersistenceStore,
        notifier: Optional[NotificationSink] = None,
        *,
        queue_size: int = 1000,
        metrics: Optional[EngineMetrics] = None,
    ):
        self._store = store
        self._notifier = notifier
        self._metrics = metrics
        self._lanes: Dict[str, asyncio.Queue] = {
            "store": asyncio.Queue(maxsize=queue_size),
            "notify": asyncio.Queue(maxsize=queue_size),
        }
        self._workers: List[asyncio.Task] = []
        self._pending: Dict[type, Any] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def dispatch(self, *effects: Any) -> None:
        for effect in effects:
            lane = "notify" if isinstance(effect, Notify) else "store"
            if isinstance(effect, Notify) and self._notifier is None:
                continue
            try:
                self._lanes[lane].put_nowait(effect)
            except asyncio.QueueFull:
                if lane == "store" and isinstance(effect, (PersistState, PersistLegs)):
                    self._hold(effect)
                    continue
                LOG.log_event(30, "effect_dropped", effect=type(effect).__name__, lane=lane)
                if self._metrics:
                    self._metrics.dispatch_dropped_total.inc()

    async def start(self) -> None:
        if self._workers:
            return
        for name, queue in self._lanes.items():
            self._workers.append(asyncio.create_task(self._worker(name, queue), name=f"effects-{name}"))

    async def drain(self) -> None:
        for queue in self._lanes.values():
            await queue.join()

    async def stop(self) -> None:
        if not self._workers:
            return
        for queue in self._lanes.values():
            await queue.put(_STOP)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    def _hold(self, effect: Any) -> None:
        kind = type(effect)
        waiting = self._pending.get(kind)
        if isinstance(effect, PersistState) and waiting is not None:
            effect = PersistState({**waiting.fields, **effect.fields})
        self._pending[kind] = effect
        LOG.log_event(20, "effect_coalesced", effect=kind.__name__, replaced=waiting is not None)
        if self._metrics:
            self._metrics.dispatch_coalesced_total.inc()

    def _release_pending(self, queue: asyncio.Queue) -> None:
        # runs right after a get, before any await, so held effects take the freed slot
        while self._pending and not queue.full():
            kind = next(iter(self._pending))
            queue.put_nowait(self._pending.pop(kind))

    async def _worker(self, lane: str, queue: asyncio.Queue) -> None:
        while True:
            effect = await queue.get()
            if lane == "store" and effect is not _STOP:
                self._release_pending(queue)
            try:
                if effect is _STOP:
                    if lane == "store":
                        while self._pending:
                            _, held = self._pending.popitem()
                            await asyncio.to_thread(self._apply, held)
                    return
                await asyncio.to_thread(self._apply, effect)
            except Exception as exc:
                name = type(effect).__name__
                event = "notify_failed" if isinstance(effect, Notify) else "persistence_failed"
                LOG.log_event(40, event, effect=name, error=str(exc))
                if self._metrics:
                    self._metrics.dispatch_failures_total.labels(effect=name).inc()
            finally:
                queue.task_done()

    def _apply(self, effect: Any) -> None:
        if isinstance(effect, Notify):
            assert self._notifier is not None
            self._notifier.notify(effect.level, effect.title, effect.body, effect.tags)
        elif isinstance(effect, PersistState):
            self._store.upsert_engine_state(effect.fields)
        elif isinstance(effect, PersistLegs):
            self._store.replace_legs(list(effect.legs))
        elif isinstance(effect, OrderLog):
            self._store.append_order_log(effect.entry)
        elif isinstance(effect, SystemLog):
            self._store.append_system_log(effect.message)
        elif isinstance(effect, TradeRecord):
            self._store.append_trade_history(effect.entry)
        elif isinstance(effect, PnlSnapshot):
            self._store.append_pnl_snapshot(effect.pnl)
        elif isinstance(effect, PurgeLogs):
            removed = self._store.cleanup_older_than(effect.days)
            LOG.log_event(20, "logs_purged", rows=removed, days=effect.days)
        else:
            raise TypeError(f"Unknown effect {effect!r}")


__all__ = [
    "EffectDispatcher",
    "Notify",
    "OrderLog",
    "PersistLegs",
    "PersistState",
    "PnlSnapshot",
    "PurgeLogs",
    "SystemLog",
    "TradeRecord",
]
