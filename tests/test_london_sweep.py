from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from autopilot.config import BotConfig
from autopilot.data.candles import Candle
from autopilot.strategy.contracts import Side
from autopilot.strategy.london_sweep import (
    LondonSweepBot,
    SweepDayState,
    SweepParams,
    evaluate_london_sweep,
    find_reaction_zone,
)

START = datetime(2024, 7, 2, 1, 0, tzinfo=timezone.utc)
# 06:15 UTC is 07:15 in London (BST)
NOW = datetime(2024, 7, 2, 6, 15, tzinfo=timezone.utc)

FILLER = (2001.0, 2002.0, 2000.5, 2001.5)
SWING = (2001.0, 2001.5, 1999.0, 2001.2)
SWEEP = (1999.8, 2000.2, 1998.7, 1999.5)
DISPLACEMENT = (1999.6, 2001.8, 1999.4, 2001.5)
TAP = (1999.9, 2000.8, 1999.5, 2000.6)


def _build(bars: list[tuple[float, float, float, float]]) -> list[Candle]:
    return [
        Candle(time=int((START + timedelta(minutes=5 * i)).timestamp()), open=o, high=h, low=l, close=c)
        for i, (o, h, l, c) in enumerate(bars)
    ]


def _session(*tail: tuple[float, float, float, float], sweep: tuple[float, float, float, float] = SWEEP) -> list[Candle]:
    # swing low at 05:10 UTC, sweep at 06:00 UTC (07:00 London)
    bars = [FILLER] * 50 + [SWING] + [FILLER] * 9 + [sweep] + list(tail)
    return _build(bars)


def test_reaction_zone_after_sweep_and_displacement() -> None:
    candles = _session(DISPLACEMENT, TAP)
    zone, swing_time, message = find_reaction_zone(candles, day_key="2024-07-02", params=SweepParams())

    assert zone is not None
    assert (zone.low, zone.high) == (1998.7, 2000.2)
    assert zone.swing_low == 1999.0
    assert zone.created_time == candles[61].time
    assert swing_time == candles[50].time
    assert message == "sweep of 1999.00, zone 1998.70-2000.20"


def test_tap_and_go_entry() -> None:
    candles = _session(DISPLACEMENT, TAP)
    evaluation, state = evaluate_london_sweep(candles, now=NOW, state=SweepDayState())

    assert evaluation.signal is not None
    signal = evaluation.signal
    assert signal.side is Side.LONG
    assert signal.entry == 2000.6
    # stop one point under the zone low, target 3R
    assert signal.stop == pytest.approx(1997.7)
    assert signal.take_profit == pytest.approx(2000.6 + 3 * 2.9)
    assert "entry tap-and-go" in signal.reason
    assert state.zone is not None
    assert state.traded_zones == (state.zone.key,)


def test_zone_traded_once_per_day() -> None:
    candles = _session(DISPLACEMENT, TAP)
    first, state = evaluate_london_sweep(candles, now=NOW, state=SweepDayState())
    second, state_after = evaluate_london_sweep(candles, now=NOW, state=state)

    assert first.signal is not None
    assert second.signal is None
    assert second.reasons == ["no qualifying sweep in window"]
    assert state_after.traded_zones == state.traded_zones


def test_revisit_after_moving_away() -> None:
    away = (2001.5, 2003.0, 2001.0, 2002.5)
    candles = _session(DISPLACEMENT, away, TAP)
    evaluation, _ = evaluate_london_sweep(
        candles, now=NOW + timedelta(minutes=5), state=SweepDayState()
    )
    assert evaluation.signal is not None
    assert "entry revisit" in evaluation.signal.reason


def test_overly_deep_sweep_is_rejected() -> None:
    candles = _session(DISPLACEMENT, TAP, sweep=(1999.8, 2000.2, 1997.5, 1999.5))
    evaluation, state = evaluate_london_sweep(candles, now=NOW, state=SweepDayState())
    assert evaluation.signal is None
    assert evaluation.reasons == ["no qualifying sweep in window"]
    assert state == SweepDayState()


def test_window_closed() -> None:
    candles = _session(DISPLACEMENT, TAP)
    late = datetime(2024, 7, 2, 9, 30, tzinfo=timezone.utc)
    evaluation, _ = evaluate_london_sweep(candles, now=late, state=SweepDayState())
    assert evaluation.reasons == ["London sweep window closed"]


class _FixedCandles:
    def __init__(self, candles: list[Candle]):
        self.candles = candles

    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        return self.candles[-limit:]


def test_bot_keeps_day_state_between_scans() -> None:
    bot = LondonSweepBot(
        BotConfig(id="london_sweep_xau", kind="london_sweep", symbol="XAUUSD", timeframe="M5", candle_count=200),
        _FixedCandles(_session(DISPLACEMENT, TAP)),
    )
    assert bot.is_window_open(NOW) is True
    assert len(bot.scan(NOW).signals) == 1
    assert len(bot.scan(NOW).signals) == 0
    assert bot.days.keys() == ["2024-07-02"]
