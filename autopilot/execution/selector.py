from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from autopilot.clock import trading_day
from autopilot.config import BotConfig, RiskConfig
from autopilot.data.market_data import MarketDataError
from autopilot.gating.spread_guard import SpreadGuard
from autopilot.gating.volatility import check_volatility
from autopilot.news.gate import NewsLock
from autopilot.storage.contracts import Store
from autopilot.strategy.contracts import CandleSource, TradeIntent

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class GuardResult:
    allowed: bool
    reason: str = ""
    risk_multiplier: float = 1.0

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(allowed=False, reason=reason)


class TradeGate:
    """Pre-trade guards. Each check vetoes with a reason; none of them raise."""

    def __init__(
        self,
        risk: RiskConfig,
        store: Store,
        candles: CandleSource,
        *,
        spread_guard: SpreadGuard | None = None,
        news_lock: NewsLock | None = None,
    ):
        self.risk = risk
        self.store = store
        self.candles = candles
        self.spread_guard = spread_guard
        self.news_lock = news_lock

    def check(self, bot: BotConfig, intent: TradeIntent, now: datetime) -> GuardResult:
        side = intent.side.value
        symbol = bot.symbol
        day = trading_day(now)

        if self.risk.block_duplicate_symbol_side:
            for position in self.store.get_open_positions(symbol):
                if position.side == side:
                    return GuardResult.reject(f"open {side} position already exists on {symbol}")

        cap = self.risk.max_trades_per_symbol_side_per_day
        if cap > 0:
            placed = self.store.count_positions_placed_on_day(day, symbol=symbol, side=side)
            if placed >= cap:
                return GuardResult.reject(f"daily {symbol} {side} cap reached ({placed}/{cap})")

        if bot.daily_cap is not None:
            placed = self.store.count_positions_placed_on_day(day, strategy_id=bot.id)
            if placed >= bot.daily_cap:
                return GuardResult.reject(f"bot {bot.id} daily cap reached ({placed}/{bot.daily_cap})")

        if self.risk.max_trades_per_day is not None:
            placed = self.store.count_positions_placed_on_day(day)
            if placed >= self.risk.max_trades_per_day:
                return GuardResult.reject(f"global daily cap reached ({placed}/{self.risk.max_trades_per_day})")

        if self.risk.single_open_position and self.store.get_open_positions():
            return GuardResult.reject("single-position rule: a position is already open")

        multiplier = 1.0
        if self.risk.volatility_filter_enabled:
            try:
                history = self.candles.fetch_ohlcv(symbol, bot.timeframe, max(50, self.risk.atr_period * 3))
            except MarketDataError as exc:
                LOGGER.warning("Volatility clamp skipped for %s: %s", symbol, exc)
                history = []
            if history:
                volatility = check_volatility(
                    history,
                    atr_period=self.risk.atr_period,
                    atr_pct_min=self.risk.atr_pct_min,
                    atr_pct_max=self.risk.atr_pct_max,
                )
                if not volatility.allowed:
                    return GuardResult.reject(volatility.reason)
                multiplier = volatility.risk_multiplier

        if self.spread_guard is not None:
            spread = self.spread_guard.check(symbol)
            if spread.blocked:
                return GuardResult.reject(spread.reason)

        if self.news_lock is not None:
            news = self.news_lock.check(symbol, now)
            if news.blocked:
                return GuardResult.reject(news.reason)

        return GuardResult(allowed=True, risk_multiplier=multiplier)
