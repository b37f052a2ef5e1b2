from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Dict, Iterable, List, Optional

from condor.engine import StrategyEngine
from condor.errors import EngineError
from condor.expiry import sort_expiries
from condor.logging_utils import get_logger
from condor.scheduler import ExpiryScheduler

LOG = get_logger("ControlSurface")


def _ok(**payload: Any) -> Dict[str, Any]:
    return {"status": "success", **payload}


def _error(exc: BaseException) -> Dict[str, Any]:
    return {"status": "error", "message": str(exc) or type(exc).__name__}


class ControlSurface:
    """
    Operator commands for an HTTP or CLI layer.

    Every method returns a plain dict: ``{"status": "success", ...}`` or
    ``{"status": "error", "message": ...}``. Nothing raises past this class.
    """

    def __init__(self, engine: StrategyEngine, scheduler: Optional[ExpiryScheduler], store: Any):
        self._engine = engine
        self._scheduler = scheduler
        self._store = store

    async def _call(self, action: str, awaitable: Awaitable[Any]) -> Any:
        LOG.log_event(20, "control_command", action=action)
        return await awaitable

    async def get_state(self) -> Dict[str, Any]:
        return _ok(data=self._engine.snapshot())

    async def get_logs(self, limit: int = 100) -> Dict[str, Any]:
        try:
            rows = await asyncio.to_thread(self._store.recent_system_logs, limit)
        except Exception as exc:
            return _error(exc)
        return _ok(data=rows)

    async def select_strikes(self, expiry: Optional[str] = None) -> Dict[str, Any]:
        try:
            legs = await self._call("select_strikes", self._engine.select_strikes(expiry))
        except (EngineError, ValueError) as exc:
            LOG.log_event(40, "control_failed", action="select_strikes", error=str(exc))
            return _error(exc)
        return _ok(message=f"Selected {len(legs)} legs", data=[leg.to_dict() for leg in legs])

    async def place_order(self, dry_run: bool = False) -> Dict[str, Any]:
        try:
            result = await self._call("place_order", self._engine.place_order(dry_run=dry_run))
        except EngineError as exc:
            LOG.log_event(40, "control_failed", action="place_order", error=str(exc))
            return _error(exc)
        if not result.ok:
            return {"status": "error", "message": result.reason or "Order failed"}
        return _ok(message=result.reason or "Orders placed")

    async def pause(self) -> Dict[str, Any]:
        await self._call("pause", self._engine.pause())
        return _ok(message="Monitoring paused")

    async def resume_monitoring(self) -> Dict[str, Any]:
        await self._call("resume_monitoring", self._engine.resume_monitoring())
        return _ok(message="Monitoring resumed")

    async def manual_exit(self) -> Dict[str, Any]:
        try:
            await self._call("manual_exit", self._engine.manual_exit())
        except EngineError as exc:
            return _error(exc)
        return _ok(message="All positions exited")

    async def update_settings(self, **fields: Any) -> Dict[str, Any]:
        try:
            snapshot = await self._call("update_settings", self._engine.update_settings(**fields))
        except (EngineError, ValueError, TypeError) as exc:
            return _error(exc)
        if self._scheduler is not None:
            await self._scheduler.evaluate()
        return _ok(message="Settings updated", data=snapshot)

    async def reset(self) -> Dict[str, Any]:
        try:
            await self._call("reset", self._engine.reset())
        except EngineError as exc:
            return _error(exc)
        return _ok(message="Engine reset to IDLE")

    async def get_expiries(self) -> Dict[str, Any]:
        try:
            rows = await asyncio.to_thread(self._store.get_manual_expiries)
        except Exception as exc:
            return _error(exc)
        return _ok(data=rows)

    async def set_manual_expiries(self, dates: Iterable[str]) -> Dict[str, Any]:
        try:
            ordered: List[str] = sort_expiries(dates)
            await asyncio.to_thread(self._store.set_manual_expiries, ordered)
        except Exception as exc:
            return _error(exc)
        if self._scheduler is not None:
            await self._scheduler.evaluate()
        return _ok(data=ordered)

    async def set_test_date(self, date: Optional[str]) -> Dict[str, Any]:
        try:
            label = self._engine.set_test_date(date)
        except ValueError as exc:
            return _error(exc)
        if self._scheduler is not None:
            await self._scheduler.evaluate()
        return _ok(data={"test_date": label})


__all__ = ["ControlSurface"]
