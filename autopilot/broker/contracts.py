from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from autopilot.data.candles import Candle

# symbols whose broker instrument is not a plain six-letter pair split
_INSTRUMENT_ALIASES = {
    "XAUUSD": "XAU_USD",
    "XAGUSD": "XAG_USD",
    "NAS100": "NAS100_USD",
    "US30": "US30_USD",
    "SPX500": "SPX500_USD",
}


def map_instrument(symbol: str) -> str:
    """Translate an app symbol (``XAUUSD``, ``OANDA:EURUSD``, ``FX:GBPUSD``) to an instrument name."""
    raw = symbol.strip().upper()
    if ":" in raw:
        raw = raw.split(":", 1)[1]
    if "_" in raw:
        return raw
    if raw in _INSTRUMENT_ALIASES:
        return _INSTRUMENT_ALIASES[raw]
    for key, instrument in _INSTRUMENT_ALIASES.items():
        if key in raw:
            return instrument
    if len(raw) == 6 and raw.isalpha():
        return f"{raw[:3]}_{raw[3:]}"
    return raw


# decimal places the broker accepts on SL/TP prices (OANDA displayPrecision)
_PRICE_PRECISION = {
    "XAU_USD": 3,
    "XAG_USD": 5,
    "NAS100_USD": 1,
    "US30_USD": 1,
    "SPX500_USD": 1,
}


def price_precision(instrument: str) -> int:
    if instrument in _PRICE_PRECISION:
        return _PRICE_PRECISION[instrument]
    base, _, quote = instrument.partition("_")
    if len(base) == 3 and len(quote) == 3 and base.isalpha() and quote.isalpha():
        return 3 if quote == "JPY" else 5
    return 2


def format_price(instrument: str, price: float) -> str:
    return f"{float(price):.{price_precision(instrument)}f}"


@dataclass(slots=True)
class OrderResult:
    order_ref: str | None
    fill_price: float | None


@dataclass(slots=True)
class Quote:
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    @property
    def spread(self) -> float:
        return self.ask - self.bid


class BrokerClient(Protocol):
    def supports_pricing(self) -> bool:
        ...

    def place_market_order(
        self,
        instrument: str,
        units: float,
        stop_loss: float,
        take_profit: float,
        client_tag: str | None = None,
    ) -> OrderResult:
        ...

    def update_stop_loss(self, order_ref: str, price: float, instrument: str | None = None) -> None:
        ...

    def close_trade(self, order_ref: str) -> None:
        ...

    def close_trade_units(self, order_ref: str, units: float) -> None:
        ...

    def get_instrument_mid_price(self, instrument: str) -> float:
        ...

    def get_instrument_quote(self, instrument: str) -> Quote:
        ...

    def get_instrument_average_spread(self, instrument: str, granularity: str = "M1", count: int = 20) -> float:
        ...

    def get_instrument_candles(self, instrument: str, granularity: str, count: int) -> list[Candle]:
        ...
