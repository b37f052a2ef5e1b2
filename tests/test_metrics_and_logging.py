import json
import logging

from prometheus_client import CollectorRegistry

from condor.config import EngineConfig
from condor.logging_utils import RateLimitedLogger, get_logger
from condor.metrics import EngineMetrics
from condor.state import StrategyStatus


def test_structured_logger_emits_json(caplog):
    logger = get_logger("test.condor", run="abc")
    with caplog.at_level(logging.INFO, logger="test.condor"):
        logger.log_event(20, "trade_placed", legs=8)
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["event"] == "trade_placed"
    assert payload["legs"] == 8
    assert payload["run"] == "abc"


def test_rate_limited_logger_suppresses_repeats(caplog):
    ticks = iter([0.0, 1.0, 6.0])
    limited = RateLimitedLogger(get_logger("test.ratelimit"), 5.0, clock=lambda: next(ticks))
    with caplog.at_level(logging.WARNING, logger="test.ratelimit"):
        limited.log_event(30, "bad_tick", "tok")
        limited.log_event(30, "bad_tick", "tok")
        limited.log_event(30, "bad_tick", "tok")
    assert len(caplog.records) == 2
    assert limited.suppressed == 1


def test_status_gauge_is_one_hot_and_exit_labels_are_bounded():
    metrics = EngineMetrics(CollectorRegistry())
    metrics.set_status(StrategyStatus.ACTIVE)
    assert metrics.status.labels(status="ACTIVE")._value.get() == 1
    assert metrics.status.labels(status="IDLE")._value.get() == 0
    metrics.record_exit("Profit Target ₹2100 (10s confirmation)")
    metrics.record_exit("Profit Target ₹2500 (10s confirmation)")
    assert metrics.exits_total.labels(reason="profit")._value.get() == 2
    metrics.record_order(virtual=True, side="BUY")
    assert metrics.orders_total.labels(mode="virtual", side="BUY")._value.get() == 1


def test_config_load_reads_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("CONDOR_VIRTUAL", raising=False)
    path = tmp_path / "app.yml"
    path.write_text(
        "strategy:\n  entry_time: '13:05'\n  target_pnl: 3000\n  is_virtual: false\n"
        "market:\n  strike_step: 100\n",
        encoding="utf-8",
    )
    cfg = EngineConfig.load(path)
    assert cfg.strategy.entry_time == "13:05"
    assert cfg.strategy.target_pnl == 3000.0
    assert cfg.strategy.is_virtual is False
    assert cfg.market.strike_step == 100
    assert cfg.strategy.exit_time == "12:45"
