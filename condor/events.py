from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class StateChange:
    prev: str
    new: str
    reason: str
    ts: dt.datetime


@dataclass(frozen=True)
class PriceUpdate:
    token: str
    ltp: float
    pnl: float
    ts: dt.datetime


@dataclass(frozen=True)
class StrategyExit:
    reason: str
    pnl: float
    status: str
    ts: dt.datetime


class EventBus:
    """In-process pub/sub; slow subscribers lose their oldest events."""

    def __init__(self) -> None:
        self._topics: Dict[str, List[asyncio.Queue]] = {}

    def publish_nowait(self, topic: str, event: Any) -> None:
        for queue in list(self._topics.get(topic, [])):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(event)

    def subscribe(self, topic: str, maxsize: int = 100) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._topics.setdefault(topic, []).append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        subscribers: Optional[List[asyncio.Queue]] = self._topics.get(topic)
        if subscribers and queue in subscribers:
            subscribers.remove(queue)


__all__ = ["EventBus", "PriceUpdate", "StateChange", "StrategyExit"]
