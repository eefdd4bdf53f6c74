from __future__ import annotations

from dataclasses import dataclass

from autopilot.data.candles import Candle
from autopilot.strategy.indicators import atr, latest_value


@dataclass(slots=True)
class VolatilityCheck:
    allowed: bool
    risk_multiplier: float = 1.0
    atr_pct: float | None = None
    reason: str = ""


def check_volatility(
    candles: list[Candle],
    *,
    atr_period: int = 14,
    atr_pct_min: float = 0.25,
    atr_pct_max: float = 1.0,
) -> VolatilityCheck:
    """ATR as a percent of the last close: too quiet rejects, too wild halves risk."""
    if len(candles) <= atr_period:
        return VolatilityCheck(allowed=True, reason="volatility unknown (short history)")
    atr_value = latest_value(atr(candles, atr_period))
    last_close = candles[-1].close
    if atr_value is None or last_close <= 0:
        return VolatilityCheck(allowed=True, reason="volatility unknown")
    atr_pct = atr_value / last_close * 100.0
    if atr_pct < atr_pct_min:
        return VolatilityCheck(
            allowed=False,
            atr_pct=atr_pct,
            reason=f"ATR {atr_pct:.2f}% below minimum {atr_pct_min:.2f}%",
        )
    if atr_pct > atr_pct_max:
        return VolatilityCheck(
            allowed=True,
            risk_multiplier=0.5,
            atr_pct=atr_pct,
            reason=f"ATR {atr_pct:.2f}% above {atr_pct_max:.2f}%; risk halved",
        )
    return VolatilityCheck(allowed=True, atr_pct=atr_pct)
