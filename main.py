from __future__ import annotations

import argparse
import asyncio
import signal
from pathlib import Path
from typing import List, Optional

from brokerage.upstox_client import CredentialError, UpstoxSession, load_upstox_credentials
from brokerage.upstox_gateway import UpstoxMarketData, UpstoxOrderGateway
from condor.alerts import AlertService
from condor.clock import MarketClock
from condor.config import IST, EngineConfig, parse_time_str
from condor.config_sanity import ConfigError, sanity_check_config
from condor.control import ControlSurface
from condor.dispatch import EffectDispatcher, Notify, SystemLog
from condor.engine import StrategyEngine
from condor.events import EventBus
from condor.logging_utils import configure_logging, get_logger
from condor.metrics import EngineMetrics, start_http_server_if_available
from condor.scheduler import DailyScheduler, ExpiryScheduler
from persistence.store import SQLiteStore


class CondorApp:
    """Wires config, broker adapters, store, engine and scheduler into one process."""

    def __init__(self, cfg: EngineConfig):
        self.cfg = cfg
        self.logger = get_logger("CondorApp")
        self.metrics = EngineMetrics()
        self.store = SQLiteStore(cfg.storage.sqlite_path)
        self.alerts = AlertService(
            cfg.alerts.throttle_seconds,
            slack_url=cfg.secrets.slack_webhook_url,
            telegram_token=cfg.secrets.telegram_bot_token,
            telegram_chat=cfg.secrets.telegram_chat_id,
        )
        self.dispatcher = EffectDispatcher(
            self.store, self.alerts, queue_size=cfg.alerts.queue_size, metrics=self.metrics
        )
        session = UpstoxSession(
            load_upstox_credentials(cfg.secrets, sandbox=cfg.broker.sandbox, algo_name=cfg.broker.algo_name)
        )
        self.market = UpstoxMarketData(
            session,
            index_symbol=cfg.market.index_symbol,
            index_token=cfg.market.index_token,
            cfg=cfg.broker,
            expiry_source=self.store.get_manual_expiries,
        )
        self.gateway = UpstoxOrderGateway(session, cfg=cfg.broker)
        self.bus = EventBus()
        self.engine = StrategyEngine(
            config=cfg,
            market=self.market,
            gateway=self.gateway,
            store=self.store,
            dispatcher=self.dispatcher,
            notifier=self.alerts,
            bus=self.bus,
            metrics=self.metrics,
        )
        self.clock = MarketClock(tz=IST)
        self.scheduler = ExpiryScheduler(
            self.engine,
            DailyScheduler(self.clock, on_error=self._on_trigger_error),
            daily_check=parse_time_str(cfg.schedule.daily_check_time),
            heartbeat_seconds=cfg.schedule.heartbeat_seconds,
        )
        self.control = ControlSurface(self.engine, self.scheduler, self.store)
        self._stop = asyncio.Event()

    def _on_trigger_error(self, name: str, exc: BaseException) -> None:
        self.dispatcher.dispatch(
            SystemLog(f"Scheduled {name} failed: {exc}"),
            Notify("Scheduler Error", f"{name}: {exc}", level="ERROR"),
        )

    async def run(self) -> None:
        self.logger.log_event(20, "engine_starting", persistence=str(self.cfg.storage.sqlite_path))
        self._install_signal_handlers()
        started = start_http_server_if_available(port_env=self.cfg.telemetry.metrics_port_env)
        self.logger.log_event(20, "metrics_bootstrap", started=started)
        self.metrics.engine_up.set(1)
        await self.engine.start()
        status = await self.engine.resume()
        self.logger.log_event(20, "engine_resumed", status=status.value, legs=len(self.engine.state.legs))
        await self.scheduler.start()
        await self._stop.wait()
        await self._cleanup()

    async def trigger_shutdown(self, reason: str) -> None:
        if not self._stop.is_set():
            self.logger.log_event(20, "shutdown", reason=reason)
            self._stop.set()

    async def _cleanup(self) -> None:
        await self.scheduler.stop()
        await self.engine.stop()
        self.market.close()
        self.store.close()
        self.metrics.engine_up.set(0)
        self.logger.log_event(20, "engine_stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda sig=sig: asyncio.create_task(self.trigger_shutdown(f"signal:{sig.name}")))


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expiry-day iron condor engine")
    parser.add_argument("--config", type=Path, help="config file (defaults to config/app.yml)", default=None)
    parser.add_argument("--log-file", dest="log_file", default=None, help="also write logs to this file")
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    cfg = EngineConfig.load(args.config)
    configure_logging(cfg.telemetry.log_level, args.log_file)
    logger = get_logger("main")
    try:
        sanity_check_config(cfg)
        app = CondorApp(cfg)
    except (ConfigError, CredentialError) as exc:
        logger.log_event(50, "startup_aborted", error=str(exc))
        raise SystemExit(2) from exc
    await app.run()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:  # pragma: no cover
        pass


if __name__ == "__main__":
    cli()
