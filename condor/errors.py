from __future__ import annotations

from typing import Any, Optional


class EngineError(Exception):
    """Base for failures the engine reports to its callers."""

    code = "engine_error"

    def __init__(self, message: str, *, code: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}


class AuthRequired(EngineError):
    """Broker session missing or expired."""

    code = "auth_required"


class InsufficientMargin(EngineError):
    code = "insufficient_margin"

    def __init__(self, required: float, available: float):
        super().__init__(
            f"Insufficient Margin: required {required:.2f}, available {available:.2f}",
            context={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class LegExecutionFailure(EngineError):
    """An order call failed mid-sequence; earlier fills are left in place."""

    code = "leg_execution_failure"


class DataUnavailable(EngineError):
    code = "data_unavailable"


class PersistenceFailure(EngineError):
    code = "persistence_failure"


class BrokerError(Exception):
    """Raw broker/SDK failure, before the engine classifies it."""

    def __init__(self, *, code: str, message: str, status: Optional[int] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.context = context or {}


__all__ = [
    "AuthRequired",
    "BrokerError",
    "DataUnavailable",
    "EngineError",
    "InsufficientMargin",
    "LegExecutionFailure",
    "PersistenceFailure",
]
