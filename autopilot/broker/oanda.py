from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any

import requests

from autopilot.broker.contracts import OrderResult, Quote, format_price
from autopilot.broker.errors import BrokerAPIError, BrokerAuthError, RetryableBrokerAPIError
from autopilot.data.candles import Candle, candles_from_oanda

LOGGER = logging.getLogger(__name__)


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            wait_seconds = 0.0
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate_per_second)
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


class OandaClient:
    """
    OANDA v20 REST client.

    Auth: ``Authorization: Bearer <token>`` on every request; all account
    endpoints live under ``/accounts/{account_id}``.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        account_id: str,
        timeout_seconds: int = 10,
        *,
        rate_limit_rps: float = 2.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.account_id = account_id.strip()
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_token}",
            }
        )
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)

    def supports_pricing(self) -> bool:
        return True

    def _account_path(self, suffix: str) -> str:
        return f"/accounts/{self.account_id}{suffix}"

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        LOGGER.warning(
            "Retrying OANDA call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        last_exc: Exception | None = None
        for attempt in range(1, self.request_max_attempts + 1):
            self._limiter.acquire()
            try:
                response = self.session.request(
                    method=method,
                    url=f"{self.base_url}{path}",
                    params=params,
                    json=json_payload,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_exc = exc
                if attempt >= self.request_max_attempts:
                    break
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429:
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerAPIError(f"Rate limited: HTTP 429 {response.text}")
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerAPIError(
                        f"Retryable error {method} {path}: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code in (401, 403):
                raise BrokerAuthError(
                    f"OANDA rejected credentials for {path}: HTTP {response.status_code} {response.text}"
                )

            if response.status_code >= 400:
                raise BrokerAPIError(f"{method} {path} failed: HTTP {response.status_code} {response.text}")

            if not response.content:
                return {}
            try:
                payload = response.json()
            except ValueError as exc:
                raise BrokerAPIError(f"{method} {path} returned invalid JSON") from exc
            return payload if isinstance(payload, dict) else {"data": payload}

        if last_exc is not None:
            raise RetryableBrokerAPIError(f"Network error {method} {path}: {last_exc}") from last_exc
        raise RetryableBrokerAPIError(f"{method} {path} failed after retries")

    def place_market_order(
        self,
        instrument: str,
        units: float,
        stop_loss: float,
        take_profit: float,
        client_tag: str | None = None,
    ) -> OrderResult:
        order: dict[str, Any] = {
            "type": "MARKET",
            "instrument": instrument,
            "units": str(int(round(units))),
            "timeInForce": "FOK",
            "positionFill": "DEFAULT",
            "stopLossOnFill": {"price": format_price(instrument, stop_loss)},
            "takeProfitOnFill": {"price": format_price(instrument, take_profit)},
        }
        if client_tag:
            order["clientExtensions"] = {"tag": client_tag}
        payload = self._request("POST", self._account_path("/orders"), json_payload={"order": order})
        if "orderCancelTransaction" in payload:
            reason = payload["orderCancelTransaction"].get("reason", "UNKNOWN")
            raise BrokerAPIError(f"Order for {instrument} cancelled: {reason}")
        transaction = payload.get("orderFillTransaction") or payload.get("lastTransaction") or {}
        opened = transaction.get("tradeOpened") or (transaction.get("tradesOpened") or [{}])[0]
        trade_id = opened.get("tradeID") or opened.get("id")
        price = transaction.get("price")
        LOGGER.info("OANDA order filled instrument=%s units=%s trade=%s price=%s", instrument, units, trade_id, price)
        return OrderResult(
            order_ref=str(trade_id) if trade_id else None,
            fill_price=float(price) if price is not None else None,
        )

    def trade_instrument(self, order_ref: str) -> str:
        payload = self._request("GET", self._account_path(f"/trades/{order_ref}"))
        instrument = (payload.get("trade") or {}).get("instrument")
        if not instrument:
            raise BrokerAPIError(f"Trade {order_ref} has no instrument")
        return str(instrument)

    def update_stop_loss(self, order_ref: str, price: float, instrument: str | None = None) -> None:
        if instrument is None:
            instrument = self.trade_instrument(order_ref)
        self._request(
            "PUT",
            self._account_path(f"/trades/{order_ref}/orders"),
            json_payload={"stopLoss": {"timeInForce": "GTC", "price": format_price(instrument, price)}},
        )

    def close_trade(self, order_ref: str) -> None:
        self._request("PUT", self._account_path(f"/trades/{order_ref}/close"), json_payload={})

    def close_trade_units(self, order_ref: str, units: float) -> None:
        whole_units = int(round(abs(units)))
        if whole_units <= 0:
            raise BrokerAPIError(f"Cannot close {units} units of trade {order_ref}")
        self._request(
            "PUT",
            self._account_path(f"/trades/{order_ref}/close"),
            json_payload={"units": str(whole_units)},
        )

    def get_instrument_quote(self, instrument: str) -> Quote:
        payload = self._request("GET", self._account_path("/pricing"), params={"instruments": instrument})
        prices = payload.get("prices") or []
        if not prices:
            raise BrokerAPIError(f"No pricing for {instrument}")
        price = prices[0]
        bids = price.get("bids") or []
        asks = price.get("asks") or []
        if not bids or not asks:
            raise BrokerAPIError(f"Malformed pricing for {instrument}")
        return Quote(bid=float(bids[0]["price"]), ask=float(asks[0]["price"]))

    def get_instrument_mid_price(self, instrument: str) -> float:
        return self.get_instrument_quote(instrument).mid

    def get_instrument_candles(self, instrument: str, granularity: str, count: int) -> list[Candle]:
        payload = self._request(
            "GET",
            f"/instruments/{instrument}/candles",
            params={"granularity": granularity, "count": int(count), "price": "M"},
        )
        return candles_from_oanda(payload)

    def get_instrument_average_spread(self, instrument: str, granularity: str = "M1", count: int = 20) -> float:
        payload = self._request(
            "GET",
            f"/instruments/{instrument}/candles",
            params={"granularity": granularity, "count": int(count), "price": "BA"},
        )
        spreads: list[float] = []
        for item in payload.get("candles", []):
            bid = item.get("bid") or {}
            ask = item.get("ask") or {}
            if "c" in bid and "c" in ask:
                spreads.append(float(ask["c"]) - float(bid["c"]))
        if not spreads:
            raise BrokerAPIError(f"No bid/ask candles for {instrument}")
        return sum(spreads) / len(spreads)
