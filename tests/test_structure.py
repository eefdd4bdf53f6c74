from __future__ import annotations

import pytest

from autopilot.data.candles import Candle
from autopilot.strategy.fvg import first_gap_after, gap_at
from autopilot.strategy.swings import detect_swings
from autopilot.strategy.volume_profile import build_volume_profile, low_volume_levels, nearest_lvn

START = 1_719_792_000


def _candle(i: int, o: float, h: float, l: float, c: float, v: float = 0.0) -> Candle:
    return Candle(time=START + i * 300, open=o, high=h, low=l, close=c, volume=v)


def test_detect_swings_fractal_2_2() -> None:
    candles = [
        _candle(i, 1.0, h, l, 1.0)
        for i, (h, l) in enumerate(
            [(1.0, 0.9), (2.0, 1.5), (5.0, 2.6), (2.2, 1.2), (1.4, 0.4), (3.0, 1.4), (2.0, 1.2)]
        )
    ]
    highs, lows = detect_swings(candles, fractal_left=2, fractal_right=2)
    assert [(p.index, p.price) for p in highs] == [(2, 5.0)]
    assert [(p.index, p.price) for p in lows] == [(4, 0.4)]


def test_bullish_and_bearish_gaps() -> None:
    bullish = [
        _candle(0, 100, 101, 99, 100.5),
        _candle(1, 101.5, 103, 101.2, 102.8),
        _candle(2, 102.8, 104, 101.6, 103.5),
    ]
    gap = gap_at(bullish, 0, "LONG")
    assert gap is not None
    assert (gap.lower, gap.upper) == (101, 101.2)
    assert gap.midpoint == pytest.approx(101.1)
    assert gap_at(bullish, 0, "SHORT") is None

    bearish = [
        _candle(0, 100, 102, 99, 101),
        _candle(1, 98.5, 98.8, 97, 97.5),
        _candle(2, 96, 98, 95, 96.5),
    ]
    gap = gap_at(bearish, 0, "SHORT")
    assert gap is not None
    assert (gap.lower, gap.upper) == (98.8, 99)


def test_first_gap_after_respects_window() -> None:
    candles = [
        _candle(0, 100, 100.5, 99.5, 100),
        _candle(1, 100, 101, 99, 100.5),
        _candle(2, 101.5, 103, 101.2, 102.8),
        _candle(3, 102.8, 104, 101.6, 103.5),
    ]
    gap = first_gap_after(candles, "LONG", start_index=0, max_candles=5)
    assert gap is not None
    assert gap.c1_index == 1
    assert first_gap_after(candles, "LONG", start_index=0, max_candles=1) is None


def test_volume_profile_and_low_volume_node() -> None:
    candles = [
        _candle(0, 5, 10, 0, 5, v=1),
        _candle(1, 1, 4.5, 0, 4, v=5),
        _candle(2, 7, 10, 6, 9, v=5),
    ]
    profile = build_volume_profile(candles, bins=10)
    assert profile.volumes == [6, 6, 6, 6, 6, 1, 6, 6, 6, 6]
    assert low_volume_levels(profile) == [5.0]

    node = nearest_lvn(candles, zone_low=4.8, zone_high=5.2, range_size=10, bins=10)
    assert node is not None
    assert (node.price, node.zone_low, node.zone_high) == (5.0, 4.0, 6.0)
    assert nearest_lvn(candles, zone_low=9.0, zone_high=9.5, range_size=10, bins=10) is None
    assert build_volume_profile([_candle(0, 1, 1, 1, 1)]).levels == []
