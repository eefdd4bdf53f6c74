from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime

from autopilot.broker.errors import BrokerAPIError
from autopilot.clock import interval_bucket, utc_now
from autopilot.config import AppConfig
from autopilot.data.market_data import MarketDataError
from autopilot.execution.orders import TradeExecutor
from autopilot.execution.position_manager import PositionManager
from autopilot.execution.selector import TradeGate
from autopilot.storage.contracts import Store
from autopilot.storage.models import SchedulerActivity, SignalRecord
from autopilot.strategy.base import StrategyBot

LOGGER = logging.getLogger(__name__)


class Scheduler:
    """Interval-bucketed scan loop plus a faster heartbeat for open positions."""

    def __init__(
        self,
        *,
        config: AppConfig,
        bots: list[StrategyBot],
        store: Store,
        gate: TradeGate,
        executor: TradeExecutor,
        position_manager: PositionManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.bots = bots
        self.store = store
        self.gate = gate
        self.executor = executor
        self.position_manager = position_manager
        self.clock = clock
        self.last_bucket: tuple[str, int, int] | None = None

    @property
    def interval_minutes(self) -> int:
        return self.config.scheduler.scan_interval_minutes

    def enabled_bots(self) -> list[StrategyBot]:
        return [bot for bot in self.bots if bot.is_enabled()]

    def _snapshot(self, now: datetime, activity: SchedulerActivity, message: str | None = None) -> SchedulerActivity:
        if message:
            activity.messages.append(message)
        activity.last_run_ts = now
        activity.universe_symbols = self.config.universe()
        activity.messages = activity.messages[-self.config.scheduler.max_messages :]
        self.store.update_scheduler_activity(activity)
        return activity

    def tick(self, now: datetime | None = None) -> SchedulerActivity:
        now = now or self.clock()
        activity = SchedulerActivity()
        if not self.config.scheduler.enabled:
            return self._snapshot(now, activity, "Scheduler disabled")
        try:
            note = self._scan(now, activity)
        except Exception:
            LOGGER.exception("Unhandled scheduler tick error")
            note = "tick failed; see logs"
        activity.messages.extend(self.heartbeat(now))
        return self._snapshot(now, activity, note)

    def _scan(self, now: datetime, activity: SchedulerActivity) -> str | None:
        open_bots = [bot for bot in self.enabled_bots() if bot.is_window_open(now)]
        activity.window = ",".join(bot.bot_id for bot in open_bots)
        if not open_bots:
            return "skip: window closed"

        bucket = interval_bucket(now, self.interval_minutes)
        if bucket == self.last_bucket:
            return f"Already ran this {self.interval_minutes}-min interval"
        self.last_bucket = bucket

        for symbol in self.config.universe():
            for bot in open_bots:
                if bot.symbol != symbol:
                    continue
                try:
                    self._run_bot(bot, now, activity)
                except Exception:
                    LOGGER.exception("Bot failed bot=%s symbol=%s", bot.bot_id, bot.symbol)
                    activity.messages.append(f"[{bot.bot_id}] failed; see logs")
        return None

    def _run_bot(self, bot: StrategyBot, now: datetime, activity: SchedulerActivity) -> None:
        try:
            result = bot.scan(now)
        except (BrokerAPIError, MarketDataError) as exc:
            LOGGER.warning("Scan failed bot=%s symbol=%s: %s", bot.bot_id, bot.symbol, exc)
            activity.messages.append(f"[{bot.bot_id}] scan failed: {exc}")
            return
        activity.messages.extend(result.reasons)
        activity.opportunities_found += len(result.signals)
        for signal in result.signals:
            fresh = self.store.add_signal(
                SignalRecord(
                    symbol=bot.symbol,
                    bar_time=signal.bar_time,
                    side=signal.side.value,
                    strategy_id=bot.bot_id,
                    price=signal.entry,
                    created_at=now,
                    reason=signal.reason,
                )
            )
            if not fresh:
                activity.messages.append(f"[{bot.bot_id}] signal already seen for bar {signal.bar_time}")
                continue
            intents, rejected = bot.select_signals([signal])
            activity.messages.extend(rejected)
            for intent in intents:
                guard = self.gate.check(bot.config, intent, now)
                if not guard.allowed:
                    activity.messages.append(f"[{bot.bot_id}] blocked: {guard.reason}")
                    continue
                outcome = self.executor.execute(bot.config, intent, now, risk_multiplier=guard.risk_multiplier)
                activity.messages.append(outcome.message)
                if outcome.placed:
                    activity.trades_placed += 1

    def heartbeat(self, now: datetime | None = None) -> list[str]:
        now = now or self.clock()
        try:
            return self.position_manager.heartbeat(now)
        except Exception:
            LOGGER.exception("Unhandled heartbeat error")
            return ["heartbeat failed; see logs"]

    def next_scan_delay(self, now: datetime | None = None) -> float:
        """Seconds until the next scan: the interval inside a window, else until the next window opens."""
        now = now or self.clock()
        interval = float(self.interval_minutes * 60)
        minimum = float(self.config.scheduler.min_sleep_seconds)
        bots = self.enabled_bots()
        if any(bot.is_window_open(now) for bot in bots):
            return interval
        upcoming: list[datetime] = []
        for bot in bots:
            opens = bot.next_window_open(now)
            if opens is not None:
                upcoming.append(opens)
        if not upcoming:
            return interval
        return max(minimum, (min(upcoming) - now).total_seconds())

    def run_forever(self, stop_event: threading.Event) -> None:
        heartbeat_seconds = float(self.config.scheduler.heartbeat_seconds)
        next_scan = time.monotonic()
        next_heartbeat = time.monotonic() + heartbeat_seconds
        while not stop_event.is_set():
            mono = time.monotonic()
            if mono >= next_scan:
                self.tick(self.clock())
                delay = self.next_scan_delay(self.clock())
                LOGGER.info("Next scan in %.0fs", delay)
                next_scan = time.monotonic() + delay
                next_heartbeat = time.monotonic() + heartbeat_seconds
            elif mono >= next_heartbeat:
                for message in self.heartbeat(self.clock()):
                    LOGGER.info("Heartbeat: %s", message)
                next_heartbeat = time.monotonic() + heartbeat_seconds
            stop_event.wait(max(0.5, min(next_scan, next_heartbeat) - time.monotonic()))
        LOGGER.info("Scheduler stopped.")
