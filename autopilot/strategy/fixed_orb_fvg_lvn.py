from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from autopilot.clock import ensure_utc, ny_open_utc
from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.fvg import first_gap_after
from autopilot.strategy.orb import opening_range_index
from autopilot.strategy.volume_profile import nearest_lvn

STRATEGY_NAME = "FIXED ORB + FVG + LVN"


@dataclass(frozen=True, slots=True)
class RangeRules:
    min_pct: float
    max_pct: float
    stop_buffer_ratio: float


SYMBOL_RULES: dict[str, RangeRules] = {
    "XAUUSD": RangeRules(min_pct=0.15, max_pct=1.0, stop_buffer_ratio=0.0),
    "NAS100": RangeRules(min_pct=0.20, max_pct=1.2, stop_buffer_ratio=0.15),
}


def rules_for(symbol: str) -> RangeRules | None:
    normalized = symbol.upper().replace("OANDA:", "").replace("_", "")
    for key, rules in SYMBOL_RULES.items():
        if key in normalized:
            return rules
    return None


@dataclass(frozen=True, slots=True)
class SessionTimes:
    open: datetime
    range_end: datetime
    window_end: datetime


def session_times(now: datetime) -> SessionTimes:
    open_at = ny_open_utc(ensure_utc(now).date())
    return SessionTimes(
        open=open_at,
        range_end=open_at + timedelta(minutes=15),
        window_end=open_at + timedelta(hours=3),
    )


def is_fixed_window_open(now: datetime) -> bool:
    current = ensure_utc(now)
    if current.weekday() >= 5:
        return False
    times = session_times(current)
    return times.range_end <= current <= times.window_end


def evaluate_fixed_orb_fvg_lvn(
    candles: list[Candle],
    *,
    now: datetime,
    symbol: str,
    timeframe_minutes: int = 15,
    take_profit_r: float = 3.0,
    min_candles: int = 80,
    gap_lookahead: int = 5,
    retest_lookahead: int = 10,
    profile_candles: int = 60,
) -> Evaluation:
    evaluation = Evaluation(signal=None)
    if not is_fixed_window_open(now):
        return evaluation.skip("outside NY open+15m..+3h window")
    rules = rules_for(symbol)
    if rules is None:
        return evaluation.skip(f"{symbol} is not eligible")
    if len(candles) < min_candles:
        return evaluation.skip(f"insufficient candles ({len(candles)} < {min_candles})")

    times = session_times(now)
    or_idx = opening_range_index(candles, times.open, timeframe_minutes)
    if or_idx is None:
        return evaluation.skip(f"no opening-range candle at {times.open:%H:%M}Z")
    or_high = candles[or_idx].high
    or_low = candles[or_idx].low
    or_size = or_high - or_low
    last_price = candles[-1].close
    or_pct = (or_size / last_price) * 100.0 if last_price else 0.0
    if not (rules.min_pct <= or_pct <= rules.max_pct):
        return evaluation.skip(
            f"OR size {or_pct:.2f}% outside {rules.min_pct:.2f}-{rules.max_pct:.2f}%"
        )

    range_end_ts = int(times.range_end.timestamp())
    window_end_ts = int(times.window_end.timestamp())
    breakout_idx: int | None = None
    side: Side | None = None
    for i in range(or_idx + 1, len(candles)):
        candle = candles[i]
        if candle.time > window_end_ts:
            break
        if candle.time < range_end_ts:
            continue
        if candle.close > or_high:
            breakout_idx, side = i, Side.LONG
            break
        if candle.close < or_low:
            breakout_idx, side = i, Side.SHORT
            break
    if breakout_idx is None or side is None:
        return evaluation.skip(f"no breakout of OR {or_low:.2f}-{or_high:.2f}")

    gap = first_gap_after(candles, side.value, start_index=breakout_idx, max_candles=gap_lookahead)
    if gap is None:
        return evaluation.skip(f"{side.value} breakout without fair-value gap")
    if side is Side.LONG and gap.lower < or_high:
        return evaluation.skip("gap not above opening range")
    if side is Side.SHORT and gap.upper > or_low:
        return evaluation.skip("gap not below opening range")

    profile_window = candles[max(0, or_idx - profile_candles + 1) : or_idx + 1]
    node = nearest_lvn(profile_window, zone_low=gap.lower, zone_high=gap.upper, range_size=or_size)
    if node is None:
        return evaluation.skip("no low-volume node near gap")

    zone_low = max(gap.lower, node.zone_low)
    zone_high = min(gap.upper, node.zone_high)
    zone_mid = (zone_low + zone_high) / 2.0
    entry_idx: int | None = None
    for i in range(gap.c3_index + 1, min(len(candles), gap.c3_index + retest_lookahead + 1)):
        candle = candles[i]
        touches = candle.low <= zone_high and candle.high >= zone_low
        if not touches:
            continue
        if side is Side.LONG and candle.close > candle.open and candle.close > zone_mid:
            entry_idx = i
            break
        if side is Side.SHORT and candle.close < candle.open and candle.close < zone_mid:
            entry_idx = i
            break
    if entry_idx is None:
        return evaluation.skip("no qualifying retest of gap/node zone")

    entry_candle = candles[entry_idx]
    entry = entry_candle.close
    buffer = rules.stop_buffer_ratio * or_size
    stop = or_low - buffer if side is Side.LONG else or_high + buffer
    risk = abs(entry - stop)
    if risk <= 0:
        return evaluation.skip("zero risk distance")
    target = entry + side.sign * take_profit_r * risk

    reason = (
        f"NY OR {or_low:.2f}-{or_high:.2f} ({or_pct:.2f}%) | breakout {side.value} | "
        f"FVG {gap.lower:.2f}-{gap.upper:.2f} + LVN @{node.price:.2f} | retest"
    )
    evaluation.reasons.append(reason)
    evaluation.signal = Signal(
        side=side,
        entry=entry,
        stop=stop,
        take_profit=target,
        reason=reason,
        strategy_name=STRATEGY_NAME,
        bar_time=entry_candle.time,
    )
    return evaluation


class FixedOrbFvgLvnBot(StrategyBot):
    strategy_name = STRATEGY_NAME

    def is_window_open(self, now: datetime) -> bool:
        return is_fixed_window_open(now)

    def next_window_open(self, now: datetime) -> datetime | None:
        current = ensure_utc(now)
        for offset in range(8):
            candidate = session_times(current + timedelta(days=offset)).range_end
            if candidate.weekday() < 5 and candidate > current:
                return candidate
        return None

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        return evaluate_fixed_orb_fvg_lvn(
            candles,
            now=now,
            symbol=self.symbol,
            timeframe_minutes=self.timeframe_minutes,
            take_profit_r=self.config.take_profit_r or 3.0,
            min_candles=self.param_int("min_candles", 80),
        )
