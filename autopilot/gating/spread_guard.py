"""SpreadGuard: block entries when the live spread is abnormally wide.

The current bid/ask spread is compared with the average spread of the most
recent ``sample_count`` bid/ask candles.  Entry is blocked when

    current_spread > multiplier * average_spread

Only brokers that expose live pricing are checked.  Any failure to fetch the
quote or the history lets the entry proceed (the guard is advisory).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from autopilot.broker.contracts import BrokerClient, map_instrument
from autopilot.broker.errors import BrokerAPIError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SpreadGuardConfig:
    """Configuration for :class:`SpreadGuard`.

    Parameters
    ----------
    enabled : bool
        Master switch.  When *False* the guard never blocks.
    multiplier : float
        Allowed multiple of the recent average spread.
    sample_count : int
        Number of bid/ask candles used for the average.
    granularity : str
        Candle granularity used for the average (``M1`` by default).
    """

    enabled: bool = True
    multiplier: float = 1.2
    sample_count: int = 20
    granularity: str = "M1"


@dataclass(slots=True)
class SpreadGuardResult:
    """Outcome of a spread check."""

    blocked: bool
    reason: str = ""
    spread: float = 0.0
    threshold: float = 0.0


class SpreadGuard:
    def __init__(self, cfg: SpreadGuardConfig, broker: BrokerClient) -> None:
        self._cfg = cfg
        self._broker = broker

    def check(self, symbol: str) -> SpreadGuardResult:
        """Return whether the current spread on *symbol* should block entry."""
        if not self._cfg.enabled or not self._broker.supports_pricing():
            return SpreadGuardResult(blocked=False)
        instrument = map_instrument(symbol)
        try:
            quote = self._broker.get_instrument_quote(instrument)
            average = self._broker.get_instrument_average_spread(
                instrument,
                granularity=self._cfg.granularity,
                count=self._cfg.sample_count,
            )
        except BrokerAPIError as exc:
            LOGGER.warning("Spread check skipped for %s: %s", symbol, exc)
            return SpreadGuardResult(blocked=False, reason="SPREAD_UNAVAILABLE")
        threshold = self._cfg.multiplier * average
        if average > 0 and quote.spread > threshold:
            return SpreadGuardResult(
                blocked=True,
                reason=f"spread {quote.spread:.5f} > {self._cfg.multiplier:.2f}x avg {average:.5f}",
                spread=quote.spread,
                threshold=threshold,
            )
        return SpreadGuardResult(blocked=False, spread=quote.spread, threshold=threshold)
