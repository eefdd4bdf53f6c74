from __future__ import annotations

from dataclasses import dataclass, field

from autopilot.data.candles import Candle


@dataclass(slots=True)
class VolumeProfile:
    levels: list[float] = field(default_factory=list)
    volumes: list[float] = field(default_factory=list)

    @property
    def peak(self) -> float:
        return max(self.volumes) if self.volumes else 0.0


@dataclass(slots=True)
class LowVolumeNode:
    price: float
    zone_low: float
    zone_high: float


def build_volume_profile(candles: list[Candle], bins: int = 60) -> VolumeProfile:
    """Spread each candle's volume across every bin its range touches.

    Missing or zero volume counts as 1 so FX feeds still produce a shape.
    """
    if not candles or bins <= 0:
        return VolumeProfile()
    low = min(c.low for c in candles)
    high = max(c.high for c in candles)
    span = high - low
    if span <= 0:
        return VolumeProfile()
    step = span / bins
    levels = [low + i * step for i in range(bins)]
    volumes = [0.0] * bins
    for candle in candles:
        weight = float(candle.volume or 0.0) or 1.0
        lo_idx = max(0, int((candle.low - low) // step))
        hi_idx = min(bins - 1, int((candle.high - low) // step))
        for i in range(lo_idx, hi_idx + 1):
            volumes[i] += weight
    return VolumeProfile(levels=levels, volumes=volumes)


def low_volume_levels(profile: VolumeProfile, threshold_ratio: float = 0.4) -> list[float]:
    threshold = threshold_ratio * profile.peak
    return [level for level, volume in zip(profile.levels, profile.volumes) if volume < threshold]


def nearest_lvn(
    candles: list[Candle],
    *,
    zone_low: float,
    zone_high: float,
    range_size: float,
    bins: int = 60,
    threshold_ratio: float = 0.4,
    band_ratio: float = 0.1,
    max_distance_ratio: float = 0.25,
) -> LowVolumeNode | None:
    """Nearest low-volume level to the zone midpoint, if it overlaps or sits close to the zone."""
    candidates = low_volume_levels(build_volume_profile(candles, bins), threshold_ratio)
    if not candidates:
        return None
    zone_mid = (zone_low + zone_high) / 2.0
    price = min(candidates, key=lambda level: abs(level - zone_mid))
    node = LowVolumeNode(
        price=price,
        zone_low=price - band_ratio * range_size,
        zone_high=price + band_ratio * range_size,
    )
    overlap = min(zone_high, node.zone_high) - max(zone_low, node.zone_low)
    if overlap > 0 or abs(zone_mid - price) <= max_distance_ratio * range_size:
        return node
    return None
