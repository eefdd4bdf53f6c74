from __future__ import annotations

from datetime import datetime

from autopilot.clock import ensure_utc, ny_open_utc
from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.indicators import atr, latest_value

STRATEGY_NAME = "ORB"


def opening_range_index(candles: list[Candle], session_open: datetime, timeframe_minutes: int) -> int | None:
    open_ts = int(ensure_utc(session_open).timestamp())
    for i, candle in enumerate(candles):
        if open_ts <= candle.time < open_ts + timeframe_minutes * 60:
            return i
    return None


def _volume_confirmed(candles: list[Candle], lookback: int) -> bool | None:
    """None when there is no volume data at all."""
    latest = candles[-1]
    history = candles[-(lookback + 1) : -1]
    if not history:
        return None
    if all((c.volume or 0.0) <= 0 for c in history) and (latest.volume or 0.0) <= 0:
        return None
    average = sum(c.volume or 0.0 for c in history) / len(history)
    return (latest.volume or 0.0) >= average


def evaluate_orb(
    candles: list[Candle],
    *,
    now: datetime,
    timeframe_minutes: int = 15,
    session_open: datetime | None = None,
    atr_period: int = 14,
    stop_atr_buffer: float = 0.2,
    target_atr_multiple: float = 2.0,
    volume_lookback: int = 10,
    require_volume: bool = True,
) -> Evaluation:
    evaluation = Evaluation(signal=None)
    if len(candles) < atr_period + 1:
        return evaluation.skip(f"insufficient candles ({len(candles)})")
    open_at = session_open or ny_open_utc(ensure_utc(now).date())
    or_idx = opening_range_index(candles, open_at, timeframe_minutes)
    if or_idx is None:
        return evaluation.skip(f"no opening-range candle at {open_at:%H:%M}Z")
    if or_idx >= len(candles) - 1:
        return evaluation.skip("opening range still forming")
    range_high = candles[or_idx].high
    range_low = candles[or_idx].low
    latest = candles[-1]
    if range_low <= latest.close <= range_high:
        return evaluation.skip(f"close {latest.close:.2f} inside range {range_low:.2f}-{range_high:.2f}")

    atr_value = latest_value(atr(candles, atr_period))
    if atr_value is None or atr_value <= 0:
        return evaluation.skip("ATR unavailable")

    if require_volume:
        confirmed = _volume_confirmed(candles, volume_lookback)
        if confirmed is False:
            return evaluation.skip("breakout volume below trailing average")
        if confirmed is None:
            evaluation.reasons.append("no volume data; confirmation skipped")

    if latest.close > range_high:
        side = Side.LONG
        stop = range_low - stop_atr_buffer * atr_value
        target = latest.close + target_atr_multiple * atr_value
    else:
        side = Side.SHORT
        stop = range_high + stop_atr_buffer * atr_value
        target = latest.close - target_atr_multiple * atr_value

    reason = (
        f"ORB {side.value} breakout | OR={range_low:.2f}-{range_high:.2f} "
        f"close={latest.close:.2f} ATR={atr_value:.2f}"
    )
    evaluation.reasons.append(reason)
    evaluation.signal = Signal(
        side=side,
        entry=latest.close,
        stop=stop,
        take_profit=target,
        reason=reason,
        strategy_name=STRATEGY_NAME,
        bar_time=latest.time,
    )
    return evaluation


class OrbBot(StrategyBot):
    strategy_name = STRATEGY_NAME

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        return evaluate_orb(
            candles,
            now=now,
            timeframe_minutes=self.timeframe_minutes,
            stop_atr_buffer=self.param_float("stop_atr_buffer", 0.2),
            target_atr_multiple=self.param_float("target_atr_multiple", 2.0),
            volume_lookback=self.param_int("volume_lookback", 10),
            require_volume=bool(self.config.params.get("require_volume", True)),
        )
