from dataclasses import replace

import pytest
from prometheus_client import CollectorRegistry

from condor.config import EngineConfig, MarketConfig, ScheduleConfig, SecretsConfig, StrategyConfig
from condor.config_sanity import ConfigError, sanity_check_config
from condor.metrics import EngineMetrics


def _cfg(**strategy) -> EngineConfig:
    return EngineConfig(strategy=replace(StrategyConfig(), **strategy))


def test_defaults_pass_and_flag_metrics():
    metrics = EngineMetrics(CollectorRegistry())
    sanity_check_config(EngineConfig(), metrics)
    assert metrics.config_sanity_ok._value.get() == 1


def test_exit_must_precede_entry():
    with pytest.raises(ConfigError, match="exit_time must be earlier"):
        sanity_check_config(_cfg(exit_time="13:05"))


def test_bad_time_string_is_reported():
    with pytest.raises(ConfigError, match="strategy.entry_time"):
        sanity_check_config(_cfg(entry_time="1pm"))


def test_threshold_signs():
    with pytest.raises(ConfigError, match="stop_loss_pnl"):
        sanity_check_config(_cfg(stop_loss_pnl=500.0))
    with pytest.raises(ConfigError, match="target_pnl"):
        sanity_check_config(_cfg(target_pnl=-1.0))
    sanity_check_config(_cfg(target_pnl=0.0, stop_loss_pnl=0.0))


def test_all_problems_are_collected():
    metrics = EngineMetrics(CollectorRegistry())
    cfg = replace(
        _cfg(lot_size=0, hedge_premium=0.0),
        market=replace(MarketConfig(), strike_step=0),
        schedule=replace(ScheduleConfig(), daily_check_time="nine"),
    )
    with pytest.raises(ConfigError) as excinfo:
        sanity_check_config(cfg, metrics)
    message = str(excinfo.value)
    for fragment in ("lot_size", "hedge_premium", "strike_step", "daily_check_time"):
        assert fragment in message
    assert metrics.config_sanity_ok._value.get() == 0
    assert metrics.config_sanity_failures._value.get() == 1


def test_live_mode_needs_broker_token():
    with pytest.raises(ConfigError, match="UPSTOX_ACCESS_TOKEN"):
        sanity_check_config(_cfg(is_virtual=False))
    cfg = replace(_cfg(is_virtual=False), secrets=SecretsConfig(upstox_access_token="tok"))
    sanity_check_config(cfg)
