from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pandas as pd
import requests

from autopilot.broker.contracts import BrokerClient, map_instrument
from autopilot.broker.errors import BrokerAPIError
from autopilot.clock import timeframe_to_minutes, utc_now
from autopilot.config import MarketDataConfig
from autopilot.data.candles import Candle, candles_from_yahoo, granularity_to_yahoo

LOGGER = logging.getLogger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"
_CSV_TS_CANDIDATES = ("ts_utc", "timestamp", "datetime", "date", "time")
_CSV_OPEN_CANDIDATES = ("open", "o")
_CSV_HIGH_CANDIDATES = ("high", "h")
_CSV_LOW_CANDIDATES = ("low", "l")
_CSV_CLOSE_CANDIDATES = ("close", "c")
_CSV_VOLUME_CANDIDATES = ("volume", "vol", "tick_volume")


class MarketDataError(RuntimeError):
    """No candle source could serve the request."""


def read_ohlcv_csv(csv_path: Path) -> pd.DataFrame:
    raw = pd.read_csv(csv_path)
    columns = {name.strip().lower(): name for name in raw.columns}

    def pick(candidates: tuple[str, ...], required: bool) -> str | None:
        for candidate in candidates:
            matched = columns.get(candidate)
            if matched is not None:
                return matched
        if required:
            raise ValueError(f"CSV missing required column. candidates={candidates}, file={csv_path}")
        return None

    ts_col = pick(_CSV_TS_CANDIDATES, required=True)
    volume_col = pick(_CSV_VOLUME_CANDIDATES, required=False)
    out = pd.DataFrame(
        {
            "ts_utc": pd.to_datetime(raw[ts_col], utc=True, errors="coerce"),
            "open": pd.to_numeric(raw[pick(_CSV_OPEN_CANDIDATES, required=True)], errors="coerce"),
            "high": pd.to_numeric(raw[pick(_CSV_HIGH_CANDIDATES, required=True)], errors="coerce"),
            "low": pd.to_numeric(raw[pick(_CSV_LOW_CANDIDATES, required=True)], errors="coerce"),
            "close": pd.to_numeric(raw[pick(_CSV_CLOSE_CANDIDATES, required=True)], errors="coerce"),
        }
    )
    if volume_col is not None:
        out["volume"] = pd.to_numeric(raw[volume_col], errors="coerce").fillna(0.0)
    else:
        out["volume"] = 0.0
    out = out.dropna(subset=["ts_utc", "open", "high", "low", "close"])
    out = out.sort_values("ts_utc").drop_duplicates(subset=["ts_utc"], keep="last")
    return out.reset_index(drop=True)


def resample_ohlcv(frame: pd.DataFrame, minutes: int) -> pd.DataFrame:
    indexed = frame.set_index("ts_utc")
    resampled = indexed.resample(f"{minutes}min", label="left", closed="left").agg(
        {"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
    )
    return resampled.dropna(subset=["open", "high", "low", "close"]).reset_index()


def frame_to_candles(frame: pd.DataFrame) -> list[Candle]:
    return [
        Candle(
            time=int(row.ts_utc.timestamp()),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def synthetic_candles(
    symbol: str,
    timeframe: str,
    limit: int,
    *,
    base_price: float,
    now: datetime,
) -> list[Candle]:
    """Deterministic random walk ending at the last completed candle before ``now``."""
    minutes = timeframe_to_minutes(timeframe)
    step = minutes * 60
    end = int(now.timestamp()) // step * step
    rng = random.Random(f"{symbol}:{timeframe}")
    volatility = base_price * 0.0015
    price = base_price
    candles: list[Candle] = []
    for index in range(limit):
        open_price = price
        close_price = max(0.01, open_price + rng.gauss(0.0, volatility))
        high = max(open_price, close_price) + abs(rng.gauss(0.0, volatility * 0.5))
        low = max(0.01, min(open_price, close_price) - abs(rng.gauss(0.0, volatility * 0.5)))
        candles.append(
            Candle(
                time=end - (limit - index) * step,
                open=open_price,
                high=high,
                low=low,
                close=close_price,
                volume=float(rng.randint(100, 1000)),
            )
        )
        price = close_price
    return candles


class MarketDataService:
    """Candle feed with fallbacks: broker, Yahoo chart API, CSV directory, synthetic walk."""

    def __init__(
        self,
        config: MarketDataConfig,
        broker: BrokerClient | None = None,
        *,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.broker = broker
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", "Mozilla/5.0 (autopilot)")
        self.clock = clock

    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        symbol_norm = symbol.strip().upper()
        tf = timeframe.strip().upper()
        if self.config.use_broker and self.broker is not None:
            try:
                candles = self.broker.get_instrument_candles(map_instrument(symbol_norm), tf, limit)
                if candles:
                    return candles[-limit:]
            except BrokerAPIError as exc:
                LOGGER.warning("Broker candles unavailable for %s %s: %s", symbol_norm, tf, exc)
        if self.config.yahoo_enabled:
            candles = self._fetch_yahoo(symbol_norm, tf)
            if candles:
                return candles[-limit:]
        if self.config.csv_dir:
            candles = self._load_csv(symbol_norm, tf)
            if candles:
                return candles[-limit:]
        if self.config.synthetic_enabled:
            base_price = self.config.synthetic_base_prices.get(symbol_norm, 100.0)
            LOGGER.warning("Using SYNTHETIC candles for %s %s", symbol_norm, tf)
            return synthetic_candles(symbol_norm, tf, limit, base_price=base_price, now=self.clock())
        raise MarketDataError(f"No candle source available for {symbol_norm} {tf}")

    def _fetch_yahoo(self, symbol: str, timeframe: str) -> list[Candle]:
        ticker = self.config.yahoo_symbols.get(symbol)
        if not ticker:
            return []
        try:
            interval = granularity_to_yahoo(timeframe)
        except ValueError:
            return []
        try:
            response = self.session.get(
                YAHOO_CHART_URL.format(ticker=ticker),
                params={"interval": interval, "range": self.config.yahoo_range},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            LOGGER.warning("Yahoo candles unavailable for %s (%s): %s", symbol, ticker, exc)
            return []
        return candles_from_yahoo(payload)

    def _load_csv(self, symbol: str, timeframe: str) -> list[Candle]:
        directory = Path(self.config.csv_dir or ".")
        for name in (f"{symbol}_{timeframe}.csv", f"{symbol}.csv"):
            path = directory / name
            if not path.exists():
                continue
            try:
                frame = read_ohlcv_csv(path)
            except (OSError, ValueError) as exc:
                LOGGER.warning("CSV candles unreadable at %s: %s", path, exc)
                continue
            if frame.empty:
                continue
            return frame_to_candles(resample_ohlcv(frame, timeframe_to_minutes(timeframe)))
        return []
