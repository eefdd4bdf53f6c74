from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from autopilot.broker.contracts import BrokerClient
from autopilot.broker.oanda import OandaClient
from autopilot.broker.paper import PaperBroker
from autopilot.clock import utc_now
from autopilot.config import AppConfig, ConfigError, apply_env_overrides, load_config
from autopilot.data.market_data import MarketDataService
from autopilot.execution.orders import TradeExecutor
from autopilot.execution.position_manager import PositionManager
from autopilot.execution.selector import TradeGate
from autopilot.explain.explainer import TemplateExplainer
from autopilot.gating.spread_guard import SpreadGuard, SpreadGuardConfig
from autopilot.monitoring.notifier import Notifier
from autopilot.news.calendar_provider import CalendarProvider, build_calendar_provider
from autopilot.news.gate import NewsLock
from autopilot.scheduler import Scheduler
from autopilot.storage.db import get_connection, init_db
from autopilot.storage.journal import Journal
from autopilot.strategy.registry import build_bots

LOGGER = logging.getLogger("autopilot")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Intraday autopilot for XAUUSD / NAS100")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--once", action="store_true", help="Run a single scheduler tick and exit.")
    mode_group.add_argument(
        "--heartbeat-once",
        action="store_true",
        help="Manage open positions once and exit.",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_config(path: str, root: Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.is_absolute():
        config_path = root / config_path
    if config_path.exists():
        config = load_config(config_path)
    else:
        LOGGER.warning("Config %s not found; using defaults", config_path)
        config = AppConfig()
    return apply_env_overrides(config)


def build_broker(config: AppConfig) -> BrokerClient:
    broker = config.broker
    if broker.provider == "paper":
        LOGGER.info("Using paper broker")
        return PaperBroker()
    if not broker.api_token or not broker.account_id:
        raise ConfigError("broker.provider=oanda requires OANDA_API_TOKEN and OANDA_ACCOUNT_ID")
    LOGGER.info("Using OANDA %s broker: %s", broker.environment, broker.base_url)
    return OandaClient(
        base_url=broker.base_url,
        api_token=broker.api_token,
        account_id=broker.account_id,
        timeout_seconds=broker.timeout_seconds,
        rate_limit_rps=broker.rate_limit_rps,
        rate_limit_burst=broker.rate_limit_burst,
        request_max_attempts=broker.request_max_attempts,
        backoff_base_seconds=broker.backoff_base_seconds,
        backoff_max_seconds=broker.backoff_max_seconds,
    )


def build_news_provider(config: AppConfig, root: Path) -> CalendarProvider:
    calendar_file = Path(config.calendar.file)
    if not calendar_file.is_absolute():
        calendar_file = root / calendar_file
    return build_calendar_provider(
        provider_name=config.calendar.provider,
        file_path=calendar_file,
        http_url=config.calendar.http_url,
        http_token=config.calendar.http_token,
        timeout_seconds=config.calendar.http_timeout_seconds,
        cache_ttl_seconds=config.calendar.http_cache_ttl_seconds,
        synthetic_time_utc=config.calendar.synthetic_time_utc,
        synthetic_days=config.calendar.synthetic_days,
    )


def build_scheduler(config: AppConfig, root: Path) -> Scheduler:
    db_path = Path(config.storage.sqlite_path)
    if not db_path.is_absolute():
        db_path = root / db_path
    conn = get_connection(db_path)
    init_db(conn)
    journal = Journal(conn, max_messages=config.scheduler.max_messages)
    LOGGER.info("SQLite state path: %s", db_path)

    broker = build_broker(config)
    market_data = MarketDataService(config.market_data, broker)
    notifier = Notifier(config.notifications)
    explainer = TemplateExplainer()
    spread_guard = SpreadGuard(
        SpreadGuardConfig(
            enabled=config.risk.spread_filter_enabled,
            multiplier=config.risk.spread_filter_mult,
            sample_count=config.risk.spread_sample_count,
            granularity=config.risk.spread_granularity,
        ),
        broker,
    )
    news_lock = NewsLock(
        build_news_provider(config, root),
        lock_minutes=config.risk.news_lock_minutes,
        symbol_currencies=config.calendar.symbol_currencies,
    )
    bots = build_bots(config, market_data)
    LOGGER.info(
        "Bots configured: %s",
        ",".join(f"{bot.bot_id}{'' if bot.is_enabled() else '(off)'}" for bot in bots),
    )
    return Scheduler(
        config=config,
        bots=bots,
        store=journal,
        gate=TradeGate(config.risk, journal, market_data, spread_guard=spread_guard, news_lock=news_lock),
        executor=TradeExecutor(
            config=config,
            broker=broker,
            store=journal,
            explainer=explainer,
            notifier=notifier,
        ),
        position_manager=PositionManager(
            config=config,
            store=journal,
            broker=broker,
            candles=market_data,
            explainer=explainer,
            notifier=notifier,
        ),
    )


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    root = Path(__file__).resolve().parent
    try:
        config = resolve_config(args.config, root)
    except (ValidationError, ConfigError) as exc:
        setup_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    setup_logging(config.log_level)

    try:
        scheduler = build_scheduler(config, root)
    except ConfigError as exc:
        LOGGER.error("Startup failed: %s", exc)
        return 2

    if args.once:
        activity = scheduler.tick(utc_now())
        for message in activity.messages:
            LOGGER.info("%s", message)
        LOGGER.info(
            "Tick done: opportunities=%d trades=%d",
            activity.opportunities_found,
            activity.trades_placed,
        )
        return 0
    if args.heartbeat_once:
        for message in scheduler.heartbeat(utc_now()):
            LOGGER.info("%s", message)
        return 0

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    LOGGER.info("Autopilot started (scan every %d min)", config.scheduler.scan_interval_minutes)
    scheduler.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(run())
