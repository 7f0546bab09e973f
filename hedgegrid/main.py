"""
Main entry point for the hedged grid engine.
Loads configuration, wires the engine components, restores running
strategies and waits for a shutdown signal. Edits to the config file are
applied to the price feed and the order executor while running.
"""

import asyncio
import os
import signal
import sys
from pathlib import Path

from hedgegrid.api.client_pool import Credential, ExchangeClientPool
from hedgegrid.api.exchange_client import ExchangeAPIClient
from hedgegrid.config.manager import ConfigManager
from hedgegrid.config.schemas import AppConfig
from hedgegrid.core.hedge_executor import DELAY_RANGES, DelayProfile, HedgeOrderExecutor
from hedgegrid.core.price_feed import PriceFeedSubscriber
from hedgegrid.database.manager import DatabaseManager
from hedgegrid.optimizer import GridParameterOptimizer
from hedgegrid.orchestrator.recovery import StrategyRecovery
from hedgegrid.orchestrator.strategy_service import GridStrategyService
from hedgegrid.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

RESTART_ONLY_FIELDS = (
    "database_url",
    "database_pool_size",
    "log_level",
    "log_dir",
    "log_to_file",
    "log_to_console",
    "json_logs",
    "exchange",
)


async def env_credential_provider(api_key: str) -> Credential | None:
    """Credential from HEDGEGRID_API_KEY / HEDGEGRID_API_SECRET when the key matches."""
    env_key = os.getenv("HEDGEGRID_API_KEY")
    env_secret = os.getenv("HEDGEGRID_API_SECRET")
    if not env_key or not env_secret or env_key != api_key:
        return None
    sandbox = os.getenv("HEDGEGRID_SANDBOX", "false").lower() in ("1", "true", "yes")
    return Credential(api_key=env_key, api_secret=env_secret, sandbox=sandbox)


class GridEngineApplication:
    """Main application manager."""

    def __init__(self) -> None:
        self.config: AppConfig | None = None
        self.config_manager: ConfigManager | None = None
        self.db_manager: DatabaseManager | None = None
        self.client_pool: ExchangeClientPool | None = None
        self.market_client: ExchangeAPIClient | None = None
        self.price_feed: PriceFeedSubscriber | None = None
        self.executor: HedgeOrderExecutor | None = None
        self.service: GridStrategyService | None = None
        self._shutdown_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self.running = False

    async def initialize(self) -> None:
        """Initialize all components."""
        config_path = os.getenv("CONFIG_PATH", "configs/hedgegrid.yaml")
        self.config_manager = ConfigManager(Path(config_path))
        config = self.config_manager.load()
        self.config = config

        log_level = os.getenv("LOG_LEVEL", config.log_level)
        setup_logging(
            log_level=log_level,
            log_dir=Path(config.log_dir),
            log_to_console=config.log_to_console,
            log_to_file=config.log_to_file,
            json_logs=config.json_logs,
        )
        logger.info(
            "initializing_application",
            config_version=self.config_manager.get_config_version(),
        )

        database_url = os.getenv("DATABASE_URL", config.database_url)
        self.db_manager = DatabaseManager(database_url, pool_size=config.database_pool_size)
        await self.db_manager.initialize()
        await self.db_manager.create_all_tables()

        exchange = config.exchange
        self.client_pool = ExchangeClientPool(
            exchange_id=exchange.exchange_id,
            timeout_ms=exchange.timeout_ms,
            rate_limit=exchange.rate_limit,
        )

        # Public market data client for the shared price streams
        self.market_client = ExchangeAPIClient(
            api_key="",
            api_secret="",
            exchange_id=exchange.exchange_id,
            sandbox=exchange.sandbox,
            rate_limit=exchange.rate_limit,
            timeout_ms=exchange.timeout_ms,
        )
        await self.market_client.initialize()

        self.price_feed = PriceFeedSubscriber(
            self.market_client,
            stale_after=config.feed.stale_after,
            backoff_base=config.feed.backoff_base,
            backoff_factor=config.feed.backoff_factor,
            backoff_max=config.feed.backoff_max,
        )
        self.executor = HedgeOrderExecutor(
            self.client_pool,
            max_concurrency=config.executor.max_concurrency,
            delay_profile=config.executor.delay_profile,
            leverage_delay=config.executor.leverage_delay,
        )
        self.service = GridStrategyService(
            self.db_manager,
            self.client_pool,
            self.price_feed,
            self.executor,
            optimizer=GridParameterOptimizer(),
            runner_options={
                "fill_confirm_attempts": config.engine.fill_confirm_attempts,
                "fill_confirm_delay": config.engine.fill_confirm_delay,
            },
        )
        self.config_manager.register_reload_callback(self._on_config_reload)
        if config.config_watch:
            self._loop = asyncio.get_running_loop()
            self.config_manager.enable_watch()

        logger.info("application_initialized")

    def _on_config_reload(self, config: AppConfig) -> None:
        # Called from the watchdog thread
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self.apply_config, config)

    def apply_config(self, config: AppConfig) -> None:
        """
        Apply a reloaded configuration to the live components.

        Feed and executor tunables take effect for the next reconnect or
        batch. Database, exchange and logging settings need a restart.
        """
        previous = self.config
        self.config = config

        if self.price_feed is not None:
            self.price_feed.stale_after = config.feed.stale_after
            self.price_feed.backoff_base = config.feed.backoff_base
            self.price_feed.backoff_factor = config.feed.backoff_factor
            self.price_feed.backoff_max = config.feed.backoff_max

        if self.executor is not None:
            self.executor.max_concurrency = config.executor.max_concurrency
            self.executor.delay_range = DELAY_RANGES[DelayProfile(config.executor.delay_profile)]
            self.executor.leverage_delay = config.executor.leverage_delay

        if previous is not None:
            restart_fields = [
                name
                for name in RESTART_ONLY_FIELDS
                if getattr(previous, name) != getattr(config, name)
            ]
            if restart_fields:
                logger.warning("config_reload_requires_restart", fields=restart_fields)

        version = self.config_manager.get_config_version() if self.config_manager else None
        logger.info("config_applied", config_version=version)

    async def start(self) -> None:
        """Restore running strategies and wait for the shutdown signal."""
        if self.config is None or self.service is None or self.db_manager is None:
            raise RuntimeError("Application not initialized")

        self.running = True
        self._shutdown_event.clear()

        if self.config.recovery.enabled:
            recovery = StrategyRecovery(
                self.db_manager,
                self.service,
                env_credential_provider,
                strategies_per_second=self.config.recovery.strategies_per_second,
                batch_delay=self.config.recovery.batch_delay,
            )
            await recovery.restore()

        logger.info("application_started")
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop runners, streams and connections."""
        logger.info("stopping_application")
        self.running = False
        self._shutdown_event.set()

        if self.service:
            try:
                await self.service.shutdown()
            except Exception as e:
                logger.error("service_shutdown_failed", error=str(e))

        if self.price_feed:
            await self.price_feed.close()

        if self.market_client:
            try:
                await self.market_client.close()
            except Exception as e:
                logger.error("market_client_close_failed", error=str(e))

        if self.client_pool:
            await self.client_pool.close()

        if self.config_manager:
            self.config_manager.disable_watch()

        if self.db_manager:
            await self.db_manager.close()

        logger.info("application_stopped")


async def run() -> None:
    """Run the application until SIGINT/SIGTERM."""
    app = GridEngineApplication()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except NotImplementedError:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(app.request_shutdown))

    try:
        await app.initialize()
        await app.start()
    except Exception as e:
        logger.error("application_error", error=str(e), exc_info=True)
        await app.stop()
        sys.exit(1)

    await app.stop()


def main() -> None:
    """Console script entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
