from __future__ import annotations

from datetime import datetime

from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.indicators import atr, ema, latest_value, rsi, vwap, vwap_is_volume_weighted

STRATEGY_NAME = "VWAP Reversion"


def evaluate_vwap_reversion(
    candles: list[Candle],
    *,
    vwap_candles: int = 50,
    deviation: float = 0.01,
    rsi_period: int = 14,
    rsi_oversold: float = 35.0,
    rsi_overbought: float = 65.0,
    trend_period: int = 50,
    atr_period: int = 14,
    stop_atr_multiple: float = 1.5,
) -> Evaluation:
    evaluation = Evaluation(signal=None)
    needed = max(vwap_candles, trend_period, rsi_period + 1, atr_period + 1)
    if len(candles) < needed:
        return evaluation.skip(f"insufficient candles ({len(candles)} < {needed})")
    recent = candles[-vwap_candles:]
    if not vwap_is_volume_weighted(recent):
        evaluation.reasons.append("no volume data; VWAP is an equal-weighted typical price")
    vwap_value = vwap(recent)[-1]
    closes = [c.close for c in candles]
    rsi_value = latest_value(rsi(closes, rsi_period))
    trend = latest_value(ema(closes, trend_period))
    atr_value = latest_value(atr(candles, atr_period))
    if rsi_value is None or trend is None or atr_value is None or atr_value <= 0:
        return evaluation.skip("indicators unavailable")

    latest = candles[-1]
    close = latest.close
    if close <= vwap_value * (1.0 - deviation) and rsi_value < rsi_oversold and close > trend:
        side = Side.LONG
    elif close >= vwap_value * (1.0 + deviation) and rsi_value > rsi_overbought and close < trend:
        side = Side.SHORT
    else:
        return evaluation.skip(
            f"no stretch from VWAP (close={close:.2f} vwap={vwap_value:.2f} RSI={rsi_value:.1f})"
        )

    stop = close - side.sign * stop_atr_multiple * atr_value
    reason = (
        f"VWAP {side.value} reversion | VWAP={vwap_value:.2f} RSI={rsi_value:.1f} "
        f"EMA{trend_period}={trend:.2f} ATR={atr_value:.2f}"
    )
    evaluation.reasons.append(reason)
    evaluation.signal = Signal(
        side=side,
        entry=close,
        stop=stop,
        take_profit=vwap_value,
        reason=reason,
        strategy_name=STRATEGY_NAME,
        bar_time=latest.time,
    )
    return evaluation


class VwapReversionBot(StrategyBot):
    strategy_name = STRATEGY_NAME

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        return evaluate_vwap_reversion(
            candles,
            vwap_candles=self.param_int("vwap_candles", 50),
            deviation=self.param_float("deviation", 0.01),
            rsi_oversold=self.param_float("rsi_oversold", 35.0),
            rsi_overbought=self.param_float("rsi_overbought", 65.0),
            stop_atr_multiple=self.param_float("stop_atr_multiple", 1.5),
        )
