from __future__ import annotations

from typing import Optional

from condor.config import EngineConfig, parse_time_str
from condor.logging_utils import get_logger
from condor.metrics import EngineMetrics

LOG = get_logger("ConfigSanity")


class ConfigError(RuntimeError):
    """Raised when config validation fails."""


def _positive(value: float) -> bool:
    return value > 0


def sanity_check_config(cfg: EngineConfig, metrics: Optional[EngineMetrics] = None) -> None:
    """
    Validate the settings the engine cannot trade safely without.

    Every problem is collected before raising so one run reports them all.

    Raises:
        ConfigError: when any check fails.
    """

    errors: list[str] = []

    def _err(code: str, message: str) -> None:
        errors.append(message)
        LOG.log_event(40, code, message=message)

    strat = cfg.strategy
    times = {}
    for name in ("entry_time", "exit_time"):
        try:
            times[name] = parse_time_str(getattr(strat, name))
        except ValueError:
            _err(f"strategy_{name}", f"strategy.{name} must be HH:MM[:SS].")
    if len(times) == 2 and times["exit_time"] >= times["entry_time"]:
        _err("strategy_exit_before_entry", "strategy.exit_time must be earlier than strategy.entry_time.")
    if strat.target_pnl < 0:
        _err("strategy_target_pnl", "strategy.target_pnl must be >= 0 (0 disables).")
    if strat.stop_loss_pnl > 0:
        _err("strategy_stop_loss_pnl", "strategy.stop_loss_pnl must be negative (0 disables).")
    if strat.confirm_seconds < 0:
        _err("strategy_confirm_seconds", "strategy.confirm_seconds must be >= 0.")
    if not _positive(strat.adjustment_trigger_price):
        _err("strategy_adjustment_trigger_price", "strategy.adjustment_trigger_price must be > 0.")
    for name in ("tier1_premium", "tier2_premium", "hedge_premium"):
        if not _positive(getattr(strat, name)):
            _err(f"strategy_{name}", f"strategy.{name} must be > 0.")
    if strat.lot_size <= 0:
        _err("strategy_lot_size", "strategy.lot_size must be > 0.")
    if strat.selection_lead_seconds < 0 or strat.selection_settle_seconds < 0:
        _err("strategy_selection_timing", "strategy selection lead/settle seconds must be >= 0.")
    if strat.persist_interval_seconds < 0:
        _err("strategy_persist_interval", "strategy.persist_interval_seconds must be >= 0.")

    market = cfg.market
    if market.strike_step <= 0:
        _err("market_strike_step", "market.strike_step must be > 0.")
    if market.chain_window <= 0 or market.adjustment_window <= 0:
        _err("market_window", "market.chain_window and market.adjustment_window must be > 0.")

    for name in ("daily_check_time", "market_open", "market_close"):
        try:
            parse_time_str(getattr(cfg.schedule, name))
        except ValueError:
            _err(f"schedule_{name}", f"schedule.{name} must be HH:MM[:SS].")

    if cfg.broker.max_retries < 0 or not _positive(cfg.broker.rest_timeout):
        _err("broker_retry", "broker.max_retries must be >= 0 and broker.rest_timeout > 0.")
    if not strat.is_virtual and not cfg.secrets.upstox_access_token:
        _err("secrets_upstox", "UPSTOX_ACCESS_TOKEN is required when strategy.is_virtual is false.")

    if errors:
        if metrics:
            metrics.config_sanity_ok.set(0)
            metrics.config_sanity_failures.inc()
        raise ConfigError("; ".join(errors))
    if metrics:
        metrics.config_sanity_ok.set(1)


__all__ = ["ConfigError", "sanity_check_config"]
