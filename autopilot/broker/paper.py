from __future__ import annotations

import logging
import uuid

from autopilot.broker.contracts import OrderResult, Quote
from autopilot.broker.errors import BrokerAPIError
from autopilot.data.candles import Candle

LOGGER = logging.getLogger(__name__)


class PaperBroker:
    """Simulated broker: orders fill at the intended entry, no live pricing."""

    def __init__(self) -> None:
        self.open_units: dict[str, float] = {}

    def supports_pricing(self) -> bool:
        return False

    def place_market_order(
        self,
        instrument: str,
        units: float,
        stop_loss: float,
        take_profit: float,
        client_tag: str | None = None,
    ) -> OrderResult:
        ref = f"PAPER-{uuid.uuid4().hex[:10]}"
        self.open_units[ref] = float(units)
        LOGGER.info(
            "Paper order %s instrument=%s units=%s sl=%.2f tp=%.2f tag=%s",
            ref,
            instrument,
            units,
            stop_loss,
            take_profit,
            client_tag,
        )
        return OrderResult(order_ref=ref, fill_price=None)

    def update_stop_loss(self, order_ref: str, price: float, instrument: str | None = None) -> None:
        LOGGER.info("Paper stop update %s -> %.5f", order_ref, price)

    def close_trade(self, order_ref: str) -> None:
        self.open_units.pop(order_ref, None)
        LOGGER.info("Paper close %s", order_ref)

    def close_trade_units(self, order_ref: str, units: float) -> None:
        remaining = self.open_units.get(order_ref)
        if remaining is not None:
            sign = 1 if remaining >= 0 else -1
            self.open_units[order_ref] = sign * max(0.0, abs(remaining) - abs(units))
        LOGGER.info("Paper partial close %s units=%s", order_ref, units)

    def get_instrument_mid_price(self, instrument: str) -> float:
        raise BrokerAPIError("paper broker has no live pricing")

    def get_instrument_quote(self, instrument: str) -> Quote:
        raise BrokerAPIError("paper broker has no live pricing")

    def get_instrument_average_spread(self, instrument: str, granularity: str = "M1", count: int = 20) -> float:
        raise BrokerAPIError("paper broker has no live pricing")

    def get_instrument_candles(self, instrument: str, granularity: str, count: int) -> list[Candle]:
        raise BrokerAPIError("paper broker has no candle feed")
