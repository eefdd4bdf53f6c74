from __future__ import annotations

from autopilot.data.candles import Candle


def _check_period(period: int) -> None:
    if period <= 0:
        raise ValueError("period must be > 0")


def sma(values: list[float], period: int) -> list[float | None]:
    _check_period(period)
    output: list[float | None] = [None] * len(values)
    running = 0.0
    for i, value in enumerate(values):
        running += value
        if i >= period:
            running -= values[i - period]
        if i >= period - 1:
            output[i] = running / period
    return output


def ema(values: list[float], period: int) -> list[float | None]:
    if not values:
        return []
    _check_period(period)
    output: list[float | None] = [None] * len(values)
    if len(values) < period:
        return output
    seed = sum(values[:period]) / period
    output[period - 1] = seed
    alpha = 2 / (period + 1)
    prev = seed
    for i in range(period, len(values)):
        prev = (values[i] - prev) * alpha + prev
        output[i] = prev
    return output


def _wilder(values: list[float], period: int, start: int = 0) -> list[float | None]:
    """Wilder smoothing seeded by the mean of the first ``period`` values from ``start``."""
    output: list[float | None] = [None] * len(values)
    seed_end = start + period
    if len(values) < seed_end:
        return output
    prev = sum(values[start:seed_end]) / period
    output[seed_end - 1] = prev
    for i in range(seed_end, len(values)):
        prev = (prev * (period - 1) + values[i]) / period
        output[i] = prev
    return output


def true_range(candles: list[Candle]) -> list[float]:
    output: list[float] = []
    prev_close: float | None = None
    for candle in candles:
        if prev_close is None:
            output.append(candle.high - candle.low)
        else:
            output.append(
                max(
                    candle.high - candle.low,
                    abs(candle.high - prev_close),
                    abs(candle.low - prev_close),
                )
            )
        prev_close = candle.close
    return output


def atr(candles: list[Candle], period: int) -> list[float | None]:
    _check_period(period)
    if not candles:
        return []
    return _wilder(true_range(candles), period)


def _typical_price(candle: Candle) -> float:
    return (candle.high + candle.low + candle.close) / 3.0


def vwap(candles: list[Candle]) -> list[float]:
    """Cumulative VWAP over ``candles``.

    While cumulative volume is zero (FX feeds) each point is the equal-weighted
    mean of typical prices instead. Use :func:`vwap_is_volume_weighted` to tell
    which mode produced the series.
    """
    output: list[float] = []
    cum_pv = 0.0
    cum_volume = 0.0
    cum_tp = 0.0
    for count, candle in enumerate(candles, start=1):
        tp = _typical_price(candle)
        volume = max(0.0, candle.volume or 0.0)
        cum_pv += tp * volume
        cum_volume += volume
        cum_tp += tp
        if cum_volume > 0:
            output.append(cum_pv / cum_volume)
        else:
            output.append(cum_tp / count)
    return output


def vwap_is_volume_weighted(candles: list[Candle]) -> bool:
    return any((candle.volume or 0.0) > 0 for candle in candles)


def rsi(values: list[float], period: int) -> list[float | None]:
    _check_period(period)
    output: list[float | None] = [None] * len(values)
    if len(values) <= period:
        return output
    gains = [0.0]
    losses = [0.0]
    for i in range(1, len(values)):
        change = values[i] - values[i - 1]
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))
    avg_gain = _wilder(gains, period, start=1)
    avg_loss = _wilder(losses, period, start=1)
    for i in range(period, len(values)):
        gain = avg_gain[i]
        loss = avg_loss[i]
        if gain is None or loss is None:
            continue
        if loss == 0:
            output[i] = 100.0 if gain > 0 else 50.0
        else:
            output[i] = 100.0 - 100.0 / (1.0 + gain / loss)
    return output


def adx(candles: list[Candle], period: int) -> list[float | None]:
    _check_period(period)
    output: list[float | None] = [None] * len(candles)
    if len(candles) < 2 * period:
        return output
    tr = true_range(candles)
    plus_dm = [0.0]
    minus_dm = [0.0]
    for i in range(1, len(candles)):
        up = candles[i].high - candles[i - 1].high
        down = candles[i - 1].low - candles[i].low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)

    # Wilder running sums starting at index 1
    dx: list[float | None] = [None] * len(candles)
    s_tr = sum(tr[1 : period + 1])
    s_plus = sum(plus_dm[1 : period + 1])
    s_minus = sum(minus_dm[1 : period + 1])
    for i in range(period, len(candles)):
        if i > period:
            s_tr = s_tr - s_tr / period + tr[i]
            s_plus = s_plus - s_plus / period + plus_dm[i]
            s_minus = s_minus - s_minus / period + minus_dm[i]
        if s_tr <= 0:
            dx[i] = 0.0
            continue
        plus_di = 100.0 * s_plus / s_tr
        minus_di = 100.0 * s_minus / s_tr
        di_sum = plus_di + minus_di
        dx[i] = 0.0 if di_sum == 0 else 100.0 * abs(plus_di - minus_di) / di_sum

    first = 2 * period - 1
    prev = sum(value for value in dx[period : first + 1] if value is not None) / period
    output[first] = prev
    for i in range(first + 1, len(candles)):
        value = dx[i]
        if value is None:
            continue
        prev = (prev * (period - 1) + value) / period
        output[i] = prev
    return output


def real_body(candle: Candle) -> float:
    return abs(candle.close - candle.open)


def latest_value(values: list[float | None]) -> float | None:
    for value in reversed(values):
        if value is not None:
            return value
    return None
