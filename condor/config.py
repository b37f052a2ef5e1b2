from __future__ import annotations

import datetime as dt
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

IST = dt.timezone(dt.timedelta(hours=5, minutes=30), name="Asia/Kolkata")

_LOGGER = logging.getLogger("condor.config")
_TRUTHY = {"1", "true", "yes", "on"}


def _canonical_config() -> Path:
    return Path(os.getenv("APP_CONFIG_PATH", "config/app.yml"))


def _read_config_payload(path: Optional[Path], *, strict: bool) -> Dict[str, Any]:
    cfg_path = path or _canonical_config()
    if not cfg_path.exists():
        if strict:
            raise FileNotFoundError(f"Config {cfg_path} not found")
        _LOGGER.warning("Config file %s missing; returning defaults", cfg_path)
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def parse_time_str(value: str) -> dt.time:
    value = value.strip()
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return dt.datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid HH:MM[:SS] time string: {value}")


def _read_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    text = value.strip()
    return text or None


def _env_flag(name: str, default: bool) -> bool:
    value = _read_env(name)
    if value is None:
        return default
    return value.lower() in _TRUTHY


@dataclass(frozen=True)
class StrategyConfig:
    entry_time: str = "13:00"
    exit_time: str = "12:45"
    selection_lead_seconds: float = 30.0
    selection_settle_seconds: float = 30.0
    target_pnl: float = 2100.0
    stop_loss_pnl: float = -1500.0
    confirm_seconds: float = 10.0
    adjustment_trigger_price: float = 100.0
    tier1_premium: float = 150.0
    tier2_premium: float = 75.0
    hedge_premium: float = 7.0
    lot_size: int = 50
    is_virtual: bool = True
    virtual_fill_latency_seconds: float = 0.1
    persist_interval_seconds: float = 300.0
    log_retention_days: int = 30

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "StrategyConfig":
        return StrategyConfig(
            entry_time=str(payload.get("entry_time", "13:00")),
            exit_time=str(payload.get("exit_time", "12:45")),
            selection_lead_seconds=float(payload.get("selection_lead_seconds", 30.0)),
            selection_settle_seconds=float(payload.get("selection_settle_seconds", 30.0)),
            target_pnl=float(payload.get("target_pnl", 2100.0)),
            stop_loss_pnl=float(payload.get("stop_loss_pnl", -1500.0)),
            confirm_seconds=float(payload.get("confirm_seconds", 10.0)),
            adjustment_trigger_price=float(payload.get("adjustment_trigger_price", 100.0)),
            tier1_premium=float(payload.get("tier1_premium", 150.0)),
            tier2_premium=float(payload.get("tier2_premium", 75.0)),
            hedge_premium=float(payload.get("hedge_premium", 7.0)),
            lot_size=int(payload.get("lot_size", 50)),
            is_virtual=_env_flag("CONDOR_VIRTUAL", bool(payload.get("is_virtual", True))),
            virtual_fill_latency_seconds=float(payload.get("virtual_fill_latency_seconds", 0.1)),
            persist_interval_seconds=float(payload.get("persist_interval_seconds", 300.0)),
            log_retention_days=int(payload.get("log_retention_days", 30)),
        )


@dataclass(frozen=True)
class MarketConfig:
    index_symbol: str = "NIFTY"
    index_exchange: str = "NSE_INDEX"
    index_token: str = "NSE_INDEX|Nifty 50"
    option_exchange: str = "NSE_FO"
    strike_step: int = 50
    chain_window: int = 50
    adjustment_window: int = 10

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "MarketConfig":
        return MarketConfig(
            index_symbol=str(payload.get("index_symbol", "NIFTY")).upper(),
            index_exchange=str(payload.get("index_exchange", "NSE_INDEX")),
            index_token=str(payload.get("index_token", "NSE_INDEX|Nifty 50")),
            option_exchange=str(payload.get("option_exchange", "NSE_FO")),
            strike_step=int(payload.get("strike_step", 50)),
            chain_window=int(payload.get("chain_window", 50)),
            adjustment_window=int(payload.get("adjustment_window", 10)),
        )


@dataclass(frozen=True)
class BrokerConfig:
    sandbox: bool = False
    algo_name: Optional[str] = None
    rest_timeout: float = 5.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    max_order_rate: float = 10.0

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "BrokerConfig":
        algo = payload.get("algo_name")
        return BrokerConfig(
            sandbox=bool(payload.get("sandbox", False)),
            algo_name=str(algo) if algo else None,
            rest_timeout=float(payload.get("rest_timeout", 5.0)),
            max_retries=int(payload.get("max_retries", 3)),
            retry_backoff=float(payload.get("retry_backoff", 0.5)),
            max_order_rate=float(payload.get("max_order_rate", 10.0)),
        )


@dataclass(frozen=True)
class AlertConfig:
    throttle_seconds: float = 0.0
    queue_size: int = 1000

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "AlertConfig":
        return AlertConfig(
            throttle_seconds=float(payload.get("throttle_seconds", 0.0)),
            queue_size=int(payload.get("queue_size", 1000)),
        )


@dataclass(frozen=True)
class StorageConfig:
    sqlite_path: Path = Path("condor_state.sqlite")

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "StorageConfig":
        env_path = _read_env("CONDOR_DB_PATH")
        return StorageConfig(sqlite_path=Path(env_path or payload.get("sqlite_path", "condor_state.sqlite")))


@dataclass(frozen=True)
class TelemetryConfig:
    metrics_port_env: str = "METRICS_PORT"
    log_level: str = "INFO"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "TelemetryConfig":
        return TelemetryConfig(
            metrics_port_env=str(payload.get("metrics_port_env", "METRICS_PORT")),
            log_level=str(payload.get("log_level", "INFO")).upper(),
        )


@dataclass(frozen=True)
class ScheduleConfig:
    daily_check_time: str = "09:00"
    heartbeat_seconds: float = 60.0
    market_open: str = "09:15"
    market_close: str = "15:30"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "ScheduleConfig":
        return ScheduleConfig(
            daily_check_time=str(payload.get("daily_check_time", "09:00")),
            heartbeat_seconds=float(payload.get("heartbeat_seconds", 60.0)),
            market_open=str(payload.get("market_open", "09:15")),
            market_close=str(payload.get("market_close", "15:30")),
        )


@dataclass(frozen=True)
class SecretsConfig:
    upstox_access_token: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    slack_webhook_url: Optional[str] = None

    @staticmethod
    def from_env() -> "SecretsConfig":
        return SecretsConfig(
            upstox_access_token=_read_env("UPSTOX_ACCESS_TOKEN"),
            telegram_bot_token=_read_env("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=_read_env("TELEGRAM_CHAT_ID"),
            slack_webhook_url=_read_env("SLACK_WEBHOOK_URL"),
        )


@dataclass(frozen=True)
class EngineConfig:
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "EngineConfig":
        return EngineConfig(
            strategy=StrategyConfig.from_dict(raw.get("strategy", {}) or {}),
            market=MarketConfig.from_dict(raw.get("market", {}) or {}),
            broker=BrokerConfig.from_dict(raw.get("broker", {}) or {}),
            alerts=AlertConfig.from_dict(raw.get("alerts", {}) or {}),
            storage=StorageConfig.from_dict(raw.get("storage", {}) or {}),
            telemetry=TelemetryConfig.from_dict(raw.get("telemetry", {}) or {}),
            schedule=ScheduleConfig.from_dict(raw.get("schedule", {}) or {}),
            secrets=SecretsConfig.from_env(),
        )

    @staticmethod
    def load(path: Optional[str | Path] = None, *, strict: bool = True) -> "EngineConfig":
        cfg_path = Path(path) if path else None
        raw = _read_config_payload(cfg_path, strict=strict)
        return EngineConfig.from_dict(raw)


__all__ = [
    "IST",
    "AlertConfig",
    "BrokerConfig",
    "EngineConfig",
    "MarketConfig",
    "ScheduleConfig",
    "SecretsConfig",
    "StorageConfig",
    "StrategyConfig",
    "TelemetryConfig",
    "parse_time_str",
]
