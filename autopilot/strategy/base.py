from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from autopilot.clock import is_session_open, next_session_start, timeframe_to_minutes
from autopilot.config import BotConfig, SessionWindowConfig
from autopilot.data.candles import Candle
from autopilot.strategy.contracts import CandleSource, Evaluation, ScanResult, Signal, TradeIntent

LOGGER = logging.getLogger(__name__)


def as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class StrategyBot:
    """Shared plumbing for one configured bot: enablement, window, scan and selection."""

    strategy_name = "UNKNOWN"
    default_window: SessionWindowConfig | None = None

    def __init__(
        self,
        config: BotConfig,
        candles: CandleSource,
        *,
        enabled_bots: list[str] | None = None,
    ):
        self.config = config
        self.bot_id = config.id
        self.symbol = config.symbol
        self.timeframe = config.timeframe
        self._candles = candles
        self._enabled_bots = [item.strip().lower() for item in enabled_bots or [] if item.strip()]

    @property
    def timeframe_minutes(self) -> int:
        return timeframe_to_minutes(self.timeframe)

    def param_float(self, name: str, default: float) -> float:
        return as_float(self.config.params.get(name), default)

    def param_int(self, name: str, default: int) -> int:
        return as_int(self.config.params.get(name), default)

    def is_enabled(self) -> bool:
        if not self.config.enabled:
            return False
        if not self._enabled_bots:
            return True
        return self.bot_id.lower() in self._enabled_bots or self.config.kind in self._enabled_bots

    def window(self) -> SessionWindowConfig | None:
        return self.config.window or self.default_window

    def is_window_open(self, now: datetime) -> bool:
        window = self.window()
        if window is None:
            return True
        return is_session_open(
            now,
            timezone_name=window.timezone,
            start=window.start,
            end=window.end,
            weekdays_only=window.weekdays_only,
            end_inclusive=window.end_inclusive,
        )

    def next_window_open(self, now: datetime) -> datetime | None:
        window = self.window()
        if window is None:
            return None
        return next_session_start(
            now,
            timezone_name=window.timezone,
            start=window.start,
            weekdays_only=window.weekdays_only,
        )

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        raise NotImplementedError

    def scan(self, now: datetime) -> ScanResult:
        candles = self._candles.fetch_ohlcv(self.symbol, self.timeframe, self.config.candle_count)
        evaluation = self.evaluate(candles, now)
        result = ScanResult(bot_id=self.bot_id, symbol=self.symbol)
        result.reasons.extend(f"[{self.bot_id}] {reason}" for reason in evaluation.reasons)
        if evaluation.signal is not None:
            result.signals.append(evaluation.signal)
        LOGGER.debug("Scan %s %s signals=%d", self.bot_id, self.symbol, len(result.signals))
        return result

    def select_signals(self, signals: list[Signal]) -> tuple[list[TradeIntent], list[str]]:
        intents: list[TradeIntent] = []
        rejected: list[str] = []
        for signal in signals:
            rr = signal.risk_reward_ratio
            if rr < self.config.min_rr:
                rejected.append(f"[{self.bot_id}] R:R {rr:.2f} below minimum {self.config.min_rr:.2f}")
                continue
            try:
                intent = TradeIntent.from_signal(
                    signal,
                    slippage_bps=self.config.slippage_bps,
                    fee_bps=self.config.fee_bps,
                    timeframe=self.timeframe,
                )
            except ValueError as exc:
                rejected.append(f"[{self.bot_id}] invalid trade geometry: {exc}")
                continue
            intents.append(intent)
        return intents, rejected
