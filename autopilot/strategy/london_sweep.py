from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from autopilot.clock import LONDON_TZ, is_session_open, london_date_key
from autopilot.config import SessionWindowConfig
from autopilot.data.candles import Candle
from autopilot.strategy.base import StrategyBot
from autopilot.strategy.contracts import Evaluation, Side, Signal
from autopilot.strategy.day_state import DailyStateStore
from autopilot.strategy.indicators import atr, real_body
from autopilot.strategy.swings import detect_swings

STRATEGY_NAME = "London Liquidity Sweep"
SWEEP_WINDOW = SessionWindowConfig(timezone=LONDON_TZ, start="06:45", end="09:00", end_inclusive=True)


@dataclass(frozen=True, slots=True)
class SweepParams:
    min_probe: float = 0.10
    max_probe: float = 1.00
    body_ratio: float = 0.40
    range_atr_multiple: float = 1.2
    atr_period: int = 14
    tap_and_go_candles: int = 15
    stop_offset: float = 1.0
    take_profit_r: float = 3.0
    min_candles: int = 50


@dataclass(frozen=True, slots=True)
class ReactionZone:
    low: float
    high: float
    swing_low: float
    sweep_time: int
    created_time: int

    @property
    def key(self) -> str:
        return f"{self.low:.5f}-{self.high:.5f}@{self.created_time}"


@dataclass(frozen=True, slots=True)
class SweepDayState:
    zone: ReactionZone | None = None
    used_swing_times: tuple[int, ...] = ()
    traded_zones: tuple[str, ...] = ()


def _in_window(candle_time: datetime, window: SessionWindowConfig) -> bool:
    return is_session_open(
        candle_time,
        timezone_name=window.timezone,
        start=window.start,
        end=window.end,
        weekdays_only=window.weekdays_only,
        end_inclusive=window.end_inclusive,
    )


def find_reaction_zone(
    candles: list[Candle],
    *,
    day_key: str,
    params: SweepParams,
    window: SessionWindowConfig = SWEEP_WINDOW,
    exclude_swing_times: tuple[int, ...] = (),
) -> tuple[ReactionZone | None, int | None, str]:
    """Most recent swept swing low followed by a bullish displacement.

    Returns the zone, the swing time it used and a diagnostic message.
    """
    _, swing_lows = detect_swings(candles, 2, 2)
    if not swing_lows:
        return None, None, "no swing low"
    atr_values = atr(candles, params.atr_period)
    for swing in reversed(swing_lows):
        if swing.time in exclude_swing_times:
            continue
        sweep_idx: int | None = None
        for j in range(swing.index + 1, len(candles)):
            candle = candles[j]
            if candle.low >= swing.price:
                continue
            probe = swing.price - candle.low
            if (
                london_date_key(candle.timestamp) == day_key
                and _in_window(candle.timestamp, window)
                and params.min_probe <= probe <= params.max_probe
                and candle.close > swing.price
            ):
                sweep_idx = j
            break
        if sweep_idx is None:
            continue
        sweep_high = candles[sweep_idx].high
        for k in range(sweep_idx + 1, len(candles)):
            candle = candles[k]
            prev = candles[k - 1]
            if candle.close <= candle.open or prev.close >= prev.open:
                continue
            candle_range = candle.high - candle.low
            atr_value = atr_values[k]
            displaced = (
                candle.close > sweep_high
                or (candle_range > 0 and real_body(candle) >= params.body_ratio * candle_range)
                or (atr_value is not None and candle_range > params.range_atr_multiple * atr_value)
            )
            if not displaced:
                continue
            zone = ReactionZone(
                low=prev.low,
                high=prev.high,
                swing_low=swing.price,
                sweep_time=candles[sweep_idx].time,
                created_time=candle.time,
            )
            return zone, swing.time, f"sweep of {swing.price:.2f}, zone {prev.low:.2f}-{prev.high:.2f}"
        return None, swing.time, f"sweep of {swing.price:.2f} without displacement"
    return None, None, "no qualifying sweep in window"


def evaluate_london_sweep(
    candles: list[Candle],
    *,
    now: datetime,
    state: SweepDayState,
    params: SweepParams = SweepParams(),
    window: SessionWindowConfig = SWEEP_WINDOW,
) -> tuple[Evaluation, SweepDayState]:
    evaluation = Evaluation(signal=None)
    if not _in_window(now, window):
        return evaluation.skip("London sweep window closed"), state
    if len(candles) < params.min_candles:
        return evaluation.skip(f"insufficient candles ({len(candles)})"), state
    day_key = london_date_key(now)

    zone = state.zone
    if zone is None or zone.key in state.traded_zones:
        zone, swing_time, message = find_reaction_zone(
            candles,
            day_key=day_key,
            params=params,
            window=window,
            exclude_swing_times=state.used_swing_times,
        )
        evaluation.reasons.append(message)
        if zone is None or swing_time is None:
            return evaluation, state
        state = replace(state, zone=zone, used_swing_times=state.used_swing_times + (swing_time,))

    latest = candles[-1]
    if latest.time <= zone.created_time:
        return evaluation.skip("waiting for price after zone creation"), state
    if not _in_window(latest.timestamp, window):
        return evaluation.skip("latest candle outside window"), state

    touches = latest.low <= zone.high and latest.high >= zone.low
    bullish = latest.close > latest.open
    after_zone = [c for c in candles if zone.created_time < c.time < latest.time]
    moved_away = any(c.close > zone.high for c in after_zone)

    path: str | None = None
    if moved_away:
        if touches and bullish and latest.close >= zone.low:
            path = "revisit"
    elif len(after_zone) + 1 <= params.tap_and_go_candles and touches and bullish:
        path = "tap-and-go"
    if path is None:
        return evaluation.skip(
            f"no entry: touches={touches} bullish={bullish} moved_away={moved_away}"
        ), state

    entry = latest.close
    stop = zone.low - params.stop_offset
    risk = entry - stop
    if risk <= 0:
        return evaluation.skip("invalid risk distance"), state
    target = entry + params.take_profit_r * risk
    reason = (
        f"Sweep low {zone.swing_low:.2f} | zone {zone.low:.2f}-{zone.high:.2f} | "
        f"entry {path} | stop {stop:.2f}"
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
    return evaluation, replace(state, traded_zones=state.traded_zones + (zone.key,))


class LondonSweepBot(StrategyBot):
    strategy_name = STRATEGY_NAME
    default_window = SWEEP_WINDOW

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.days: DailyStateStore[SweepDayState] = DailyStateStore(
            SweepDayState, max_days=self.param_int("state_days", 5)
        )

    def _params(self) -> SweepParams:
        defaults = SweepParams()
        return SweepParams(
            min_probe=self.param_float("min_probe", defaults.min_probe),
            max_probe=self.param_float("max_probe", defaults.max_probe),
            body_ratio=self.param_float("body_ratio", defaults.body_ratio),
            range_atr_multiple=self.param_float("range_atr_multiple", defaults.range_atr_multiple),
            tap_and_go_candles=self.param_int("tap_and_go_candles", defaults.tap_and_go_candles),
            stop_offset=self.param_float("stop_offset", defaults.stop_offset),
            take_profit_r=self.config.take_profit_r or defaults.take_profit_r,
            min_candles=self.param_int("min_candles", defaults.min_candles),
        )

    def evaluate(self, candles: list[Candle], now: datetime) -> Evaluation:
        day_key = london_date_key(now)
        evaluation, new_state = evaluate_london_sweep(
            candles,
            now=now,
            state=self.days.get(day_key),
            params=self._params(),
            window=self.window() or SWEEP_WINDOW,
        )
        self.days.put(day_key, new_state)
        return evaluation
