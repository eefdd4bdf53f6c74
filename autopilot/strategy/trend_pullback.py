from __future__ import annotations

from datetime import datetime

from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.indicators import adx, atr, ema, latest_value

STRATEGY_NAME = "Trend Pullback"


def evaluate_trend_pullback(
    candles: list[Candle],
    *,
    fast_period: int = 9,
    slow_period: int = 21,
    adx_period: int = 14,
    adx_threshold: float = 25.0,
    atr_period: int = 14,
    pullback_atr: float = 0.5,
    stop_atr_multiple: float = 1.8,
    target_atr_multiple: float = 2.2,
) -> Evaluation:
    evaluation = Evaluation(signal=None)
    needed = max(slow_period, 2 * adx_period, atr_period) + 1
    if len(candles) < needed:
        return evaluation.skip(f"insufficient candles ({len(candles)} < {needed})")
    closes = [c.close for c in candles]
    fast = latest_value(ema(closes, fast_period))
    slow = latest_value(ema(closes, slow_period))
    adx_value = latest_value(adx(candles, adx_period))
    atr_value = latest_value(atr(candles, atr_period))
    if fast is None or slow is None or adx_value is None or atr_value is None or atr_value <= 0:
        return evaluation.skip("indicators unavailable")
    if adx_value <= adx_threshold:
        return evaluation.skip(f"ADX {adx_value:.1f} not trending (<= {adx_threshold:.0f})")

    latest = candles[-1]
    previous = candles[-2]
    near_fast = abs(latest.close - fast) <= pullback_atr * atr_value
    if fast > slow and near_fast and latest.close > previous.high:
        side = Side.LONG
    elif fast < slow and near_fast and latest.close < previous.low:
        side = Side.SHORT
    else:
        return evaluation.skip(
            f"no pullback resumption (EMA{fast_period}={fast:.2f} EMA{slow_period}={slow:.2f} close={latest.close:.2f})"
        )

    entry = latest.close
    stop = entry - side.sign * stop_atr_multiple * atr_value
    target = entry + side.sign * target_atr_multiple * atr_value
    reason = (
        f"Trend {side.value} pullback | ADX={adx_value:.1f} EMA{fast_period}={fast:.2f} "
        f"EMA{slow_period}={slow:.2f} ATR={atr_value:.2f}"
    )
    evaluation.reasons.append(reason)
    evaluation.signal = Signal(
        side=side,
        entry=entry,
        stop=stop,
        take_profit=target,
        reason=reason,
        strategy_name=STRATEGY_NAME,
        bar_time=latest.time,
    )
    return evaluation


class TrendPullbackBot(StrategyBot):
    strategy_name = STRATEGY_NAME

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        return evaluate_trend_pullback(
            candles,
            adx_threshold=self.param_float("adx_threshold", 25.0),
            pullback_atr=self.param_float("pullback_atr", 0.5),
            stop_atr_multiple=self.param_float("stop_atr_multiple", 1.8),
            target_atr_multiple=self.param_float("target_atr_multiple", 2.2),
        )
