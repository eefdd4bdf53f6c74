from __future__ import annotations

from dataclasses import dataclass

from autopilot.data.candles import Candle


@dataclass(slots=True)
class FairValueGap:
    side: str
    c1_index: int
    c3_index: int
    lower: float
    upper: float

    @property
    def midpoint(self) -> float:
        return (self.lower + self.upper) / 2.0


def gap_at(candles: list[Candle], index: int, side: str) -> FairValueGap | None:
    """Three-candle gap starting at ``index``: candle 1 against the combined range of candles 2 and 3."""
    if index < 0 or index + 2 >= len(candles):
        return None
    c1, c2, c3 = candles[index], candles[index + 1], candles[index + 2]
    if side == "LONG":
        floor = min(c2.low, c3.low)
        if floor > c1.high:
            return FairValueGap(side=side, c1_index=index, c3_index=index + 2, lower=c1.high, upper=floor)
        return None
    ceiling = max(c2.high, c3.high)
    if ceiling < c1.low:
        return FairValueGap(side=side, c1_index=index, c3_index=index + 2, lower=ceiling, upper=c1.low)
    return None


def first_gap_after(
    candles: list[Candle],
    side: str,
    *,
    start_index: int,
    max_candles: int,
) -> FairValueGap | None:
    for index in range(max(0, start_index), min(len(candles) - 2, start_index + max_candles)):
        gap = gap_at(candles, index, side)
        if gap is not None:
            return gap
    return None
