from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from condor.clock import utc_now


class StructuredLogger(logging.LoggerAdapter):
    """Adapter emitting one JSON object per event, merged with bound context."""

    def log_event(self, level: int, event: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        payload: Dict[str, Any] = {"event": event, "ts": utc_now().isoformat()}
        payload.update(self.extra or {})
        payload.update(fields)
        message = json.dumps(payload, default=str, separators=(",", ":"))
        self.logger.log(level, message)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


def get_logger(name: str, level: Optional[str] = None, **context: Any) -> StructuredLogger:
    if level:
        configure_logging(level)
    base = logging.getLogger(name)
    return StructuredLogger(base, dict(context))


class RateLimitedLogger:
    """Drops repeats of the same (event, key) inside ``min_interval_seconds``."""

    def __init__(
        self,
        logger: StructuredLogger,
        min_interval_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._logger = logger
        self._interval = max(min_interval_seconds, 0.0)
        self._clock = clock
        self._last: Dict[Tuple[str, str], float] = {}
        self.suppressed = 0

    def log_event(self, level: int, event: str, key: str, **fields: Any) -> None:
        now = self._clock()
        marker = (event, key)
        last_ts = self._last.get(marker)
        if last_ts is not None and self._interval > 0 and (now - last_ts) < self._interval:
            self.suppressed += 1
            return
        self._last[marker] = now
        self._logger.log_event(level, event, **fields)


__all__ = ["RateLimitedLogger", "StructuredLogger", "configure_logging", "get_logger"]
