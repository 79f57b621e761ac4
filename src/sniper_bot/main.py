"""
Sniper Bot - Main Entry Point

Usage:
    python -m sniper_bot.main [--dry-run] [--log-level LEVEL]
    python -m sniper_bot.main --mode scan    # One backfill scan, log pairs, exit
    python -m sniper_bot.main --mode all     # Full bot (default)

Configuration:
    The bot reads configuration from:
    1. Environment variables (optionally from a .env file)
    2. blockchain.json for venue addresses (factoryAddress, routerAddress,
       WETHAddress); environment variables override it
    3. Command line arguments

Environment Variables:
    DATABASE_URL                PostgreSQL connection string (required for --mode all)
    RPC_URL_WS                  Websocket RPC endpoint for the live feed
    RPC_URL_HTTP                HTTP RPC endpoint for calls and transactions
    PRIVATE_KEY                 Operator key (required when DRY_RUN=false)
    VERIFICATION_API_URL        Explorer API (default: polygonscan)
    VERIFICATION_API_KEY        Explorer API key
    BLOCKCHAIN_CONFIG_PATH      Path to blockchain.json (default: blockchain.json)
    FACTORY_ADDRESS             Factory emitting PairCreated
    ROUTER_ADDRESS              Router used for swaps and approvals
    BASE_ASSET_ADDRESS          Wrapped native / base asset
    DRY_RUN                     "true" to screen pairs without trading (default: true)
    SNIPE_AMOUNT                Base asset per snipe, whole units (default: 0.001)
    STOP_LOSS_PERCENTAGE        Default: 10
    TAKE_PROFIT_PERCENTAGE      Default: 20
    ETH_LIQUIDITY_THRESHOLD     Minimum base reserve, whole units (default: 1)
    TOKEN_LIQUIDITY_THRESHOLD   Minimum token reserve, whole units (default: 1000)
    AMOUNT_OUT_MIN              Minimum swap output, smallest units (default: 0)
    GAS_PRICE_PREMIUM_PERCENT   Gas price as % of network suggestion (default: 120)
    HEARTBEAT_INTERVAL          Seconds (default: 60)
    WATCHDOG_INTERVAL           Seconds (default: 30)
    BACKFILL_INTERVAL           Seconds (default: 300)
    BACKFILL_WINDOW             Blocks (default: 10000)
    POSITION_CHECK_INTERVAL     Seconds (default: 300)
    RECONNECT_BACKOFF           "false" to reconnect without backoff (default: true)
    EVALUATOR_WORKERS           Default: 4
    EVALUATOR_QUEUE_SIZE        Default: 100
    EXIT_BASIS                  "value" or "amount" (default: value)
    LOG_LEVEL                   DEBUG/INFO/WARNING/ERROR
    LOG_FILE                    Also write logs to this file

Live Mode Requirements:
    When DRY_RUN=false the bot requires PRIVATE_KEY and fails fast without it.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import json
import logging
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "/tmp/sniper-bot.pid"
BASE_DECIMALS = 18


class SingletonBotError(Exception):
    """Raised when another bot instance is already running."""
    pass


class ConfigError(ValueError):
    """Invalid or incomplete configuration."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Ensure only one bot instance trades from the capital pool at a time.

    Raises:
        SingletonBotError: If another instance holds the lock
    """
    pid_path = Path(pid_file)

    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        detail = f" (PID: {existing_pid})" if existing_pid else ""
        raise SingletonBotError(f"Another bot instance is already running{detail}")

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError:
            pass

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def to_units(amount: Decimal | str, decimals: int = BASE_DECIMALS) -> int:
    """Whole-unit amount -> smallest-denomination integer."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


@dataclass
class BotConfig:
    """Complete bot configuration."""

    database_url: str = ""

    # Node
    rpc_url_ws: str = ""
    rpc_url_http: str = ""
    private_key: Optional[str] = None

    # Verification oracle
    verification_api_url: Optional[str] = None
    verification_api_key: Optional[str] = None

    # Venue
    factory_address: str = ""
    router_address: str = ""
    base_asset_address: str = ""

    # Trading parameters
    dry_run: bool = True
    snipe_amount: Decimal = Decimal("0.001")
    stop_loss_pct: Decimal = Decimal("10")
    take_profit_pct: Decimal = Decimal("20")
    eth_liquidity_threshold: Decimal = Decimal("1")
    token_liquidity_threshold: Decimal = Decimal("1000")
    amount_out_min: int = 0
    gas_price_premium_percent: int = 120
    exit_basis: str = "value"

    # Timers
    heartbeat_interval: float = 60.0
    watchdog_interval: float = 30.0
    backfill_interval: float = 300.0
    backfill_window: int = 10_000
    position_check_interval: float = 300.0
    reconnect_backoff: bool = True

    # Dispatch
    evaluator_workers: int = 4
    evaluator_queue_size: int = 100

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Load configuration from blockchain.json and environment variables."""
        venue = load_blockchain_config(
            os.environ.get("BLOCKCHAIN_CONFIG_PATH", "blockchain.json")
        )

        return cls(
            database_url=os.environ.get("DATABASE_URL", ""),
            rpc_url_ws=os.environ.get("RPC_URL_WS", ""),
            rpc_url_http=os.environ.get("RPC_URL_HTTP", ""),
            private_key=os.environ.get("PRIVATE_KEY") or None,
            verification_api_url=os.environ.get("VERIFICATION_API_URL") or None,
            verification_api_key=os.environ.get("VERIFICATION_API_KEY") or None,
            factory_address=os.environ.get("FACTORY_ADDRESS", venue.get("factoryAddress", "")),
            router_address=os.environ.get("ROUTER_ADDRESS", venue.get("routerAddress", "")),
            base_asset_address=os.environ.get("BASE_ASSET_ADDRESS", venue.get("WETHAddress", "")),
            dry_run=_env_bool("DRY_RUN", "true"),
            snipe_amount=Decimal(os.environ.get("SNIPE_AMOUNT", "0.001")),
            stop_loss_pct=Decimal(os.environ.get("STOP_LOSS_PERCENTAGE", "10")),
            take_profit_pct=Decimal(os.environ.get("TAKE_PROFIT_PERCENTAGE", "20")),
            eth_liquidity_threshold=Decimal(os.environ.get("ETH_LIQUIDITY_THRESHOLD", "1")),
            token_liquidity_threshold=Decimal(os.environ.get("TOKEN_LIQUIDITY_THRESHOLD", "1000")),
            amount_out_min=int(os.environ.get("AMOUNT_OUT_MIN", "0")),
            gas_price_premium_percent=int(os.environ.get("GAS_PRICE_PREMIUM_PERCENT", "120")),
            exit_basis=os.environ.get("EXIT_BASIS", "value").strip().lower(),
            heartbeat_interval=float(os.environ.get("HEARTBEAT_INTERVAL", "60")),
            watchdog_interval=float(os.environ.get("WATCHDOG_INTERVAL", "30")),
            backfill_interval=float(os.environ.get("BACKFILL_INTERVAL", "300")),
            backfill_window=int(os.environ.get("BACKFILL_WINDOW", "10000")),
            position_check_interval=float(os.environ.get("POSITION_CHECK_INTERVAL", "300")),
            reconnect_backoff=_env_bool("RECONNECT_BACKOFF", "true"),
            evaluator_workers=int(os.environ.get("EVALUATOR_WORKERS", "4")),
            evaluator_queue_size=int(os.environ.get("EVALUATOR_QUEUE_SIZE", "100")),
        )

    def validate(self, mode: str = "all") -> list[str]:
        """Problems that prevent starting in ``mode``. Empty when valid."""
        problems = []
        if not self.rpc_url_http:
            problems.append("RPC_URL_HTTP is required")
        if not self.factory_address:
            problems.append("FACTORY_ADDRESS (or blockchain.json factoryAddress) is required")
        if mode == "scan":
            return problems

        if not self.database_url:
            problems.append("DATABASE_URL is required")
        if not self.rpc_url_ws:
            problems.append("RPC_URL_WS is required")
        if not self.router_address:
            problems.append("ROUTER_ADDRESS (or blockchain.json routerAddress) is required")
        if not self.base_asset_address:
            problems.append("BASE_ASSET_ADDRESS (or blockchain.json WETHAddress) is required")
        if not self.dry_run and not self.private_key:
            problems.append("Live trading requires PRIVATE_KEY")
        if self.exit_basis not in ("value", "amount"):
            problems.append(f"EXIT_BASIS must be 'value' or 'amount', got {self.exit_basis!r}")
        if not (0 <= self.stop_loss_pct <= 100):
            problems.append("STOP_LOSS_PERCENTAGE must be between 0 and 100")
        return problems


def load_blockchain_config(path: str) -> dict:
    """Venue addresses from a blockchain.json file, or {} if absent."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            data = json.load(f)
        logger.info(f"Loaded venue configuration from {config_path}")
        return data if isinstance(data, dict) else {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load {config_path}: {e}")
        return {}


class SniperBot:
    """
    Main bot orchestrator.

    Startup order: store -> chain -> evaluator/engine -> background tasks
    -> subscriber, so no discovered pair arrives before something can
    evaluate it. Shutdown runs in reverse.
    """

    def __init__(self, config: BotConfig, chain=None, oracle=None, db=None):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Injected collaborators (tests) or built on start
        self._chain = chain
        self._oracle = oracle
        self._db = db

        self._position_repo = None
        self._executor = None
        self._engine = None
        self._evaluator = None
        self._background_tasks = None
        self._subscriber = None

    @property
    def engine(self):
        return self._engine

    @property
    def subscriber(self):
        return self._subscriber

    async def start(self) -> None:
        logger.info("=" * 60)
        logger.info("NEW PAIR SNIPER")
        logger.info("=" * 60)
        logger.info(f"Trading: {'DRY RUN' if self.config.dry_run else 'LIVE'}")
        logger.info(f"Exit basis: {self.config.exit_basis}")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()
        self._setup_signal_handlers()

        try:
            await self._init_database()
            self._init_chain()
            await self._init_engine()
            await self._init_background_tasks()
            await self._init_subscriber()

            logger.info("Bot started successfully")
            await self._shutdown_event.wait()

        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        for name, component in (
            ("subscriber", self._subscriber),
            ("background tasks", self._background_tasks),
            ("engine", self._engine),
        ):
            if component is None:
                continue
            try:
                await component.stop()
            except Exception as e:
                logger.warning(f"Error stopping {name}: {e}")

        if self._oracle is not None and hasattr(self._oracle, "close"):
            try:
                await self._oracle.close()
            except Exception as e:
                logger.warning(f"Error closing verification client: {e}")

        if self._db is not None:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        logger.info("Shutdown complete")

    def request_shutdown(self, reason: str = "manual") -> None:
        logger.warning(f"Shutdown requested: {reason}")
        self._shutdown_event.set()

    async def _init_database(self) -> None:
        """Open the position store. Any failure here is fatal."""
        from sniper_bot.storage import Database, DatabaseConfig, PositionRepository

        if self._db is None:
            if not self.config.database_url:
                raise ConfigError("DATABASE_URL environment variable is required")
            self._db = Database(DatabaseConfig(url=self.config.database_url))
            await self._db.initialize()

            if not await self._db.health_check():
                raise RuntimeError("Database health check failed")

        self._position_repo = PositionRepository(self._db)
        open_positions = await self._position_repo.count()
        logger.info(f"Database: Connected ({open_positions} open positions)")

    def _init_chain(self) -> None:
        from sniper_bot.ingestion import ExplorerVerificationClient, Web3ChainInterface

        if self._chain is None:
            self._chain = Web3ChainInterface(
                http_url=self.config.rpc_url_http,
                ws_url=self.config.rpc_url_ws,
                factory_address=self.config.factory_address,
                router_address=self.config.router_address,
                private_key=self.config.private_key,
            )
            logger.info(f"Chain: wallet {self._chain.wallet_address or '(none, read-only)'}")

        if self._oracle is None:
            self._oracle = ExplorerVerificationClient(
                api_key=self.config.verification_api_key,
                base_url=self.config.verification_api_url,
            )

    async def _init_engine(self) -> None:
        from sniper_bot.core import (
            EngineConfig,
            EvaluatorConfig,
            SnipeEngine,
            SnipeEvaluator,
            VerificationCache,
        )
        from sniper_bot.execution import ExecutionConfig, TradeExecutor

        self._executor = TradeExecutor(
            self._chain,
            ExecutionConfig(
                router_address=self.config.router_address,
                base_asset_address=self.config.base_asset_address,
                gas_price_premium_percent=self.config.gas_price_premium_percent,
                amount_out_min=self.config.amount_out_min,
                dry_run=self.config.dry_run,
            ),
        )

        self._evaluator = SnipeEvaluator(
            chain=self._chain,
            verification_cache=VerificationCache(self._oracle),
            position_repo=self._position_repo,
            executor=self._executor,
            config=EvaluatorConfig(
                base_asset_address=self.config.base_asset_address,
                snipe_amount=to_units(self.config.snipe_amount),
                eth_liquidity_threshold=to_units(self.config.eth_liquidity_threshold),
                token_liquidity_threshold=to_units(self.config.token_liquidity_threshold),
            ),
        )

        self._engine = SnipeEngine(
            self._evaluator,
            EngineConfig(
                workers=self.config.evaluator_workers,
                queue_size=self.config.evaluator_queue_size,
            ),
        )
        await self._engine.start()
        logger.info(f"Engine: Started (mode={'DRY RUN' if self.config.dry_run else 'LIVE'})")

    async def _init_background_tasks(self) -> None:
        from sniper_bot.core import BackgroundTaskConfig, BackgroundTasksManager
        from sniper_bot.execution import ExitBasis, PositionManager, PositionManagerConfig

        position_manager = PositionManager(
            chain=self._chain,
            position_repo=self._position_repo,
            executor=self._executor,
            config=PositionManagerConfig(
                base_asset_address=self.config.base_asset_address,
                stop_loss_pct=self.config.stop_loss_pct,
                take_profit_pct=self.config.take_profit_pct,
                exit_basis=ExitBasis(self.config.exit_basis),
            ),
        )

        self._background_tasks = BackgroundTasksManager(
            position_manager=position_manager,
            evaluator=self._evaluator,
            config=BackgroundTaskConfig(
                position_check_interval_seconds=self.config.position_check_interval,
            ),
        )
        await self._background_tasks.start()
        logger.info("Background tasks: Started")

    async def _init_subscriber(self) -> None:
        from sniper_bot.ingestion import ChainEventSubscriber

        self._subscriber = ChainEventSubscriber(
            self._chain,
            on_candidate=self._engine.submit,
            config=build_subscriber_config(self.config),
        )
        await self._subscriber.start()
        logger.info("Subscriber: Started, listening for new pairs...")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except (NotImplementedError, RuntimeError):
            pass


def build_subscriber_config(config: BotConfig):
    from sniper_bot.ingestion import SubscriberConfig

    return SubscriberConfig(
        heartbeat_interval=config.heartbeat_interval,
        watchdog_interval=config.watchdog_interval,
        backfill_interval=config.backfill_interval,
        backfill_window=config.backfill_window,
        reconnect_backoff_enabled=config.reconnect_backoff,
    )


async def run_scan(config: BotConfig, chain=None) -> int:
    """Log every pair created in the backfill window, without trading."""
    from sniper_bot.ingestion import ChainEventSubscriber, Web3ChainInterface

    if chain is None:
        chain = Web3ChainInterface(
            http_url=config.rpc_url_http,
            ws_url=config.rpc_url_ws,
            factory_address=config.factory_address,
            router_address=config.router_address or None,
        )

    async def ignore(_candidate) -> None:
        return None

    scanner = ChainEventSubscriber(chain, on_candidate=ignore, config=build_subscriber_config(config))
    events = await scanner.scan_recent()
    for index, event in enumerate(events, start=1):
        logger.info(
            f"Pair {index}: {event.args['pair']} "
            f"(token0={event.args['token0']}, token1={event.args['token1']}, "
            f"block={event.block_height}, tx={event.tx_hash})"
        )
    return len(events)


def configure_file_logging(path: Optional[str]) -> None:
    if not path:
        return
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(handler)


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="New pair sniper bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Screen pairs without submitting transactions",
    )
    parser.add_argument(
        "--mode",
        choices=["all", "scan"],
        default="all",
        help="all: run the bot; scan: list recent pairs and exit (default: all)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    config = BotConfig.from_env()

    if args.dry_run:
        config.dry_run = True

    problems = config.validate(args.mode)
    if problems:
        for problem in problems:
            logger.error(problem)
        logger.error("See .env.example for configuration")
        return 1

    if args.mode == "scan":
        try:
            await run_scan(config)
            return 0
        except Exception as e:
            logger.error(f"Error checking recent pairs: {e}")
            return 1

    bot = SniperBot(config)
    try:
        await bot.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.error(f"Error during bot initialization: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    load_env_file()
    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))
    configure_file_logging(os.environ.get("LOG_FILE"))

    if args.mode == "scan":
        try:
            return asyncio.run(main_async(args))
        except KeyboardInterrupt:
            return 0

    try:
        with singleton_lock(os.environ.get("PID_FILE", DEFAULT_PID_FILE)):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonBotError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
