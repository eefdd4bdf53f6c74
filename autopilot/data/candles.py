from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(slots=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.time, tz=timezone.utc)


def parse_timestamp(value: str) -> datetime:
    normalized = value.replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    # RFC3339 with nanoseconds, as returned by OANDA
    if "." in normalized:
        head, tail = normalized.split(".", 1)
        digits = "".join(ch for ch in tail if ch.isdigit())
        suffix = tail[len(digits):]
        normalized = f"{head}.{digits[:6]}{suffix}"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def granularity_to_yahoo(timeframe: str) -> str:
    mapping = {
        "M1": "1m",
        "M5": "5m",
        "M15": "15m",
        "M30": "30m",
        "H1": "60m",
        "D1": "1d",
    }
    if timeframe not in mapping:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    return mapping[timeframe]


def candles_from_oanda(payload: dict[str, Any]) -> list[Candle]:
    output: list[Candle] = []
    for item in payload.get("candles", []):
        mid = item.get("mid") or {}
        ts_raw = item.get("time")
        if ts_raw is None or not mid:
            continue
        output.append(
            Candle(
                time=int(parse_timestamp(str(ts_raw)).timestamp()),
                open=float(mid["o"]),
                high=float(mid["h"]),
                low=float(mid["l"]),
                close=float(mid["c"]),
                volume=float(item.get("volume") or 0.0),
            )
        )
    return sorted(output, key=lambda c: c.time)


def candles_from_yahoo(payload: dict[str, Any]) -> list[Candle]:
    results = (payload.get("chart") or {}).get("result") or []
    if not results:
        return []
    result = results[0]
    timestamps = result.get("timestamp") or []
    quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0]
    opens = quotes.get("open") or []
    highs = quotes.get("high") or []
    lows = quotes.get("low") or []
    closes = quotes.get("close") or []
    volumes = quotes.get("volume") or []
    output: list[Candle] = []
    for index, ts in enumerate(timestamps):
        try:
            o, h, l, c = opens[index], highs[index], lows[index], closes[index]
        except IndexError:
            break
        if o is None or h is None or l is None or c is None:
            continue
        volume = volumes[index] if index < len(volumes) else None
        output.append(
            Candle(
                time=int(ts),
                open=float(o),
                high=float(h),
                low=float(l),
                close=float(c),
                volume=float(volume or 0.0),
            )
        )
    return sorted(output, key=lambda c: c.time)
