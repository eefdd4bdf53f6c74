from __future__ import annotations

from dataclasses import dataclass

from autopilot.data.candles import Candle


@dataclass(slots=True)
class SwingPoint:
    index: int
    time: int
    price: float
    kind: str


def detect_swings(
    candles: list[Candle],
    fractal_left: int = 2,
    fractal_right: int = 2,
    *,
    start: int = 0,
    end: int | None = None,
) -> tuple[list[SwingPoint], list[SwingPoint]]:
    """Fractal swing highs/lows with centers in ``[start, end)``."""
    highs: list[SwingPoint] = []
    lows: list[SwingPoint] = []
    stop = len(candles) if end is None else min(end, len(candles))
    first = max(fractal_left, start)
    last = min(stop, len(candles) - fractal_right)
    for index in range(first, last):
        center = candles[index]
        neighbours = candles[index - fractal_left : index] + candles[index + 1 : index + 1 + fractal_right]
        if all(center.high > c.high for c in neighbours):
            highs.append(SwingPoint(index=index, time=center.time, price=center.high, kind="HIGH"))
        if all(center.low < c.low for c in neighbours):
            lows.append(SwingPoint(index=index, time=center.time, price=center.low, kind="LOW"))
    return highs, lows
