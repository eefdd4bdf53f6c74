from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from autopilot.clock import LONDON_TZ, is_session_open, london_date_key
from autopilot.config import SessionWindowConfig
from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.day_state import DailyStateStore
from autopilot.strategy.indicators import atr
from autopilot.strategy.swings import detect_swings

STRATEGY_NAME = "London Continuation"
ANCHOR_WINDOW = SessionWindowConfig(timezone=LONDON_TZ, start="06:45", end="09:30", end_inclusive=True)
TRADE_WINDOW = SessionWindowConfig(timezone=LONDON_TZ, start="08:30", end="11:00", end_inclusive=True)


@dataclass(frozen=True, slots=True)
class ContinuationParams:
    min_leg_points: float = 10.0
    min_leg_atr: float = 2.0
    atr_period: int = 14
    retrace_low: float = 0.38
    retrace_high: float = 0.62
    breakout_tolerance: float = 2.0
    stop_offset: float = 1.0
    take_profit_r: float = 3.0
    min_anchor_candles: int = 10


@dataclass(frozen=True, slots=True)
class AnchorLeg:
    low: float
    high: float
    low_time: int
    high_time: int

    @property
    def size(self) -> float:
        return self.high - self.low

    @property
    def mid(self) -> float:
        return (self.high + self.low) / 2.0

    def retrace_zone(self, lower: float, upper: float) -> tuple[float, float]:
        return self.low + lower * self.size, self.low + upper * self.size


@dataclass(frozen=True, slots=True)
class ContinuationDayState:
    anchor: AnchorLeg | None = None
    pullback_traded: bool = False
    breakout_traded: bool = False


def _inside(window: SessionWindowConfig, when: datetime) -> bool:
    return is_session_open(
        when,
        timezone_name=window.timezone,
        start=window.start,
        end=window.end,
        weekdays_only=window.weekdays_only,
        end_inclusive=window.end_inclusive,
    )


def find_anchor_leg(
    candles: list[Candle],
    *,
    day_key: str,
    params: ContinuationParams,
    window: SessionWindowConfig = ANCHOR_WINDOW,
) -> AnchorLeg | None:
    """Largest impulsive swing-low to swing-high leg inside the anchor window."""
    in_window = [
        i
        for i, c in enumerate(candles)
        if london_date_key(c.timestamp) == day_key and _inside(window, c.timestamp)
    ]
    if len(in_window) < params.min_anchor_candles:
        return None
    start, end = in_window[0], in_window[-1] + 1
    highs, lows = detect_swings(candles, 2, 2, start=start, end=end)
    if not highs or not lows:
        return None
    atr_values = atr(candles, params.atr_period)
    best: AnchorLeg | None = None
    for low in lows:
        for high in highs:
            if high.index <= low.index or high.price <= low.price:
                continue
            size = high.price - low.price
            atr_value = atr_values[high.index]
            impulsive = size >= params.min_leg_points or (
                atr_value is not None and size >= params.min_leg_atr * atr_value
            )
            if not impulsive:
                continue
            if best is None or size > best.size:
                best = AnchorLeg(low=low.price, high=high.price, low_time=low.time, high_time=high.time)
    return best


def evaluate_london_continuation(
    candles: list[Candle],
    *,
    now: datetime,
    state: ContinuationDayState,
    params: ContinuationParams = ContinuationParams(),
    anchor_window: SessionWindowConfig = ANCHOR_WINDOW,
    trade_window: SessionWindowConfig = TRADE_WINDOW,
) -> tuple[Evaluation, ContinuationDayState]:
    evaluation = Evaluation(signal=None)
    if not _inside(trade_window, now):
        return evaluation.skip("London continuation window closed"), state
    if not candles:
        return evaluation.skip("no candles"), state
    day_key = london_date_key(now)

    anchor = state.anchor
    if anchor is None:
        anchor = find_anchor_leg(candles, day_key=day_key, params=params, window=anchor_window)
        if anchor is None:
            return evaluation.skip("no impulsive anchor leg"), state
        state = replace(state, anchor=anchor)
        evaluation.reasons.append(f"anchor {anchor.low:.2f}-{anchor.high:.2f}")

    if state.pullback_traded and state.breakout_traded:
        return evaluation.skip("both setups already traded today"), state

    latest = candles[-1]
    if latest.time <= anchor.high_time:
        return evaluation.skip("waiting for candle after anchor high"), state
    if latest.close < anchor.mid:
        return evaluation.skip(f"close {latest.close:.2f} below anchor mid {anchor.mid:.2f}"), state
    bullish = latest.close > latest.open

    entry = latest.close
    setup: str | None = None
    stop = 0.0
    zone_low, zone_high = anchor.retrace_zone(params.retrace_low, params.retrace_high)
    candle_mid = (latest.high + latest.low) / 2.0
    if (
        not state.pullback_traded
        and latest.low <= zone_high
        and latest.high >= zone_low
        and bullish
        and latest.close >= candle_mid
    ):
        setup = "pullback"
        stop = min(zone_low - params.stop_offset, anchor.low - params.stop_offset)
    elif (
        not state.breakout_traded
        and latest.low <= anchor.high + params.breakout_tolerance
        and latest.high >= anchor.high - params.breakout_tolerance
        and bullish
        and latest.close > anchor.high
    ):
        setup = "breakout"
        stop = anchor.low - params.stop_offset
    if setup is None:
        return evaluation.skip("no pullback or breakout trigger"), state

    risk = entry - stop
    if risk <= 0:
        return evaluation.skip("invalid risk distance"), state
    target = entry + params.take_profit_r * risk
    reason = (
        f"London anchor {anchor.low:.2f}-{anchor.high:.2f} | {setup} entry | "
        f"stop {stop:.2f}"
    )
    evaluation.reasons.append(reason)
    evaluation.signal = Signal(
        side=Side.LONG,
        entry=entry,
        stop=stop,
        take_profit=target,
        reason=reason,
        strategy_name=STRATEGY_NAME,
        bar_time=latest.time,
    )
    if setup == "pullback":
        state = replace(state, pullback_traded=True)
    else:
        state = replace(state, breakout_traded=True)
    return evaluation, state


class LondonContinuationBot(StrategyBot):
    strategy_name = STRATEGY_NAME
    default_window = TRADE_WINDOW

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.days: DailyStateStore[ContinuationDayState] = DailyStateStore(
            ContinuationDayState, max_days=self.param_int("state_days", 5)
        )

    def _params(self) -> ContinuationParams:
        defaults = ContinuationParams()
        return ContinuationParams(
            min_leg_points=self.param_float("min_leg_points", defaults.min_leg_points),
            min_leg_atr=self.param_float("min_leg_atr", defaults.min_leg_atr),
            retrace_low=self.param_float("retrace_low", defaults.retrace_low),
            retrace_high=self.param_float("retrace_high", defaults.retrace_high),
            breakout_tolerance=self.param_float("breakout_tolerance", defaults.breakout_tolerance),
            stop_offset=self.param_float("stop_offset", defaults.stop_offset),
            take_profit_r=self.config.take_profit_r or defaults.take_profit_r,
            min_anchor_candles=self.param_int("min_anchor_candles", defaults.min_anchor_candles),
        )

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        day_key = london_date_key(now)
        evaluation, new_state = evaluate_london_continuation(
            candles,
            now=now,
            state=self.days.get(day_key),
            params=self._params(),
            trade_window=self.window() or TRADE_WINDOW,
        )
        self.days.put(day_key, new_state)
        return evaluation
