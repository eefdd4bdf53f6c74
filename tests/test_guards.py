from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from autopilot.broker.contracts import Quote
from autopilot.broker.errors import BrokerAPIError
from autopilot.broker.paper import PaperBroker
from autopilot.config import BotConfig, RiskConfig
from autopilot.data.candles import Candle
from autopilot.execution.selector import TradeGate
from autopilot.gating.spread_guard import SpreadGuard, SpreadGuardConfig
from autopilot.gating.volatility import check_volatility
from autopilot.news.calendar_provider import (
    FileCalendarProvider,
    HttpCalendarProvider,
    SyntheticCalendarProvider,
    build_calendar_provider,
)
from autopilot.news.gate import NewsLock
from autopilot.storage.db import get_connection, init_db
from autopilot.storage.journal import Journal
from autopilot.storage.models import PositionRecord
from autopilot.strategy.contracts import Side, TradeIntent

NOW = datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc)
BOT = BotConfig(id="trend_pullback", kind="trend_pullback", symbol="XAUUSD")
INTENT = TradeIntent(
    side=Side.LONG,
    entry_price=2000.0,
    stop_price=1990.0,
    take_profit_price=2030.0,
    reason="test",
    strategy_type="Trend Pullback",
    slippage_bps=0.0,
    fee_bps=0.0,
    risk_reward_ratio=3.0,
    timeframe="M15",
    bar_time=1_719_828_000,
)


def _bars(close: float, spread: float, count: int = 30) -> list[Candle]:
    return [
        Candle(time=1_719_800_000 + i * 900, open=close, high=close + spread / 2, low=close - spread / 2, close=close)
        for i in range(count)
    ]


class _Feed:
    def __init__(self, candles: list[Candle]):
        self.candles = candles

    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        return self.candles


def _journal(tmp_path) -> Journal:
    conn = get_connection(tmp_path / "autopilot.db")
    init_db(conn)
    return Journal(conn)


def _position(position_id: str, *, side: str = "LONG", symbol: str = "XAUUSD", status: str = "OPEN", strategy_id: str = "orb") -> PositionRecord:
    return PositionRecord(
        id=position_id,
        status=status,
        side=side,
        symbol=symbol,
        entry_time=NOW,
        entry_price=2000.0,
        quantity=1.0,
        stop_price=1990.0,
        initial_stop_price=1990.0,
        take_profit_price=2030.0,
        strategy_id=strategy_id,
    )


def _gate(tmp_path, risk: RiskConfig, candles: list[Candle] | None = None, **kwargs) -> tuple[TradeGate, Journal]:
    journal = _journal(tmp_path)
    return TradeGate(risk, journal, _Feed(candles or []), **kwargs), journal


def test_duplicate_symbol_side_blocked(tmp_path) -> None:
    gate, journal = _gate(tmp_path, RiskConfig(volatility_filter_enabled=False))
    journal.add_position(_position("POS-1"))
    result = gate.check(BOT, INTENT, NOW)
    assert result.allowed is False
    assert result.reason == "open LONG position already exists on XAUUSD"

    journal.add_position(_position("POS-2", side="SHORT", symbol="NAS100"))
    assert gate.check(BotConfig(id="b", kind="orb", symbol="NAS100"), INTENT, NOW).allowed is True


def test_symbol_side_daily_cap(tmp_path) -> None:
    gate, journal = _gate(
        tmp_path,
        RiskConfig(volatility_filter_enabled=False, max_trades_per_symbol_side_per_day=2),
    )
    journal.add_position(_position("POS-1", status="CLOSED"))
    assert gate.check(BOT, INTENT, NOW).allowed is True
    journal.add_position(_position("POS-2", status="CLOSED"))
    result = gate.check(BOT, INTENT, NOW)
    assert result.allowed is False
    assert "cap reached (2/2)" in result.reason


def test_bot_and_global_daily_caps(tmp_path) -> None:
    capped_bot = BotConfig(id="orb", kind="orb", symbol="XAUUSD", daily_cap=1)
    gate, journal = _gate(tmp_path, RiskConfig(volatility_filter_enabled=False, max_trades_per_day=2))
    journal.add_position(_position("POS-1", status="CLOSED", side="SHORT", strategy_id="orb"))
    assert gate.check(capped_bot, INTENT, NOW).reason == "bot orb daily cap reached (1/1)"
    assert gate.check(BOT, INTENT, NOW).allowed is True

    journal.add_position(_position("POS-2", status="CLOSED", side="SHORT", symbol="NAS100"))
    assert gate.check(BOT, INTENT, NOW).reason == "global daily cap reached (2/2)"


def test_single_open_position_rule(tmp_path) -> None:
    gate, journal = _gate(tmp_path, RiskConfig(volatility_filter_enabled=False, single_open_position=True))
    journal.add_position(_position("POS-1", symbol="NAS100"))
    assert gate.check(BOT, INTENT, NOW).reason == "single-position rule: a position is already open"


def test_volatility_band() -> None:
    quiet = check_volatility(_bars(100.0, 0.1))
    assert quiet.allowed is False
    assert quiet.atr_pct == pytest.approx(0.1)

    normal = check_volatility(_bars(100.0, 0.5))
    assert normal.allowed is True
    assert normal.risk_multiplier == 1.0

    wild = check_volatility(_bars(100.0, 2.0))
    assert wild.allowed is True
    assert wild.risk_multiplier == 0.5

    assert check_volatility(_bars(100.0, 0.1, count=10)).allowed is True


def test_gate_passes_volatility_multiplier(tmp_path) -> None:
    gate, _ = _gate(tmp_path, RiskConfig(), candles=_bars(2000.0, 40.0))
    result = gate.check(BOT, INTENT, NOW)
    assert result.allowed is True
    assert result.risk_multiplier == 0.5

    quiet_gate, _ = _gate(tmp_path / "quiet", RiskConfig(), candles=_bars(2000.0, 1.0))
    assert quiet_gate.check(BOT, INTENT, NOW).allowed is False


class _PricingBroker(PaperBroker):
    def __init__(self, spread: float, average: float, fail: bool = False):
        super().__init__()
        self.spread = spread
        self.average = average
        self.fail = fail

    def supports_pricing(self) -> bool:
        return True

    def get_instrument_quote(self, instrument: str) -> Quote:
        if self.fail:
            raise BrokerAPIError("pricing down")
        return Quote(bid=2000.0, ask=2000.0 + self.spread)

    def get_instrument_average_spread(self, instrument: str, granularity: str = "M1", count: int = 20) -> float:
        return self.average


def test_spread_guard() -> None:
    config = SpreadGuardConfig(multiplier=1.2)
    wide = SpreadGuard(config, _PricingBroker(spread=0.5, average=0.3)).check("XAUUSD")
    assert wide.blocked is True
    assert wide.threshold == pytest.approx(0.36)

    assert SpreadGuard(config, _PricingBroker(spread=0.3, average=0.3)).check("XAUUSD").blocked is False
    unavailable = SpreadGuard(config, _PricingBroker(0.5, 0.3, fail=True)).check("XAUUSD")
    assert unavailable.blocked is False
    assert unavailable.reason == "SPREAD_UNAVAILABLE"
    assert SpreadGuard(config, PaperBroker()).check("XAUUSD").blocked is False
    assert SpreadGuard(SpreadGuardConfig(enabled=False), _PricingBroker(5, 0.3)).check("XAUUSD").blocked is False


def test_gate_blocks_on_spread(tmp_path) -> None:
    gate, _ = _gate(
        tmp_path,
        RiskConfig(volatility_filter_enabled=False),
        spread_guard=SpreadGuard(SpreadGuardConfig(), _PricingBroker(spread=0.5, average=0.3)),
    )
    result = gate.check(BOT, INTENT, NOW)
    assert result.allowed is False
    assert result.reason.startswith("spread ")


def test_news_lock_around_synthetic_release() -> None:
    lock = NewsLock(SyntheticCalendarProvider("13:30"), lock_minutes=15)
    assert lock.check("XAUUSD", datetime(2024, 7, 1, 13, 20, tzinfo=timezone.utc)).blocked is True
    assert lock.check("XAUUSD", datetime(2024, 7, 1, 13, 45, tzinfo=timezone.utc)).blocked is True
    assert lock.check("XAUUSD", datetime(2024, 7, 1, 13, 50, tzinfo=timezone.utc)).blocked is False
    # no releases on Saturday
    assert lock.check("XAUUSD", datetime(2024, 7, 6, 13, 30, tzinfo=timezone.utc)).blocked is False
    assert NewsLock(SyntheticCalendarProvider("13:30"), lock_minutes=0).check(
        "XAUUSD", datetime(2024, 7, 1, 13, 30, tzinfo=timezone.utc)
    ).blocked is False


class _BrokenCalendar:
    def get_high_impact_events(self, start_dt, end_dt):
        raise requests.ConnectionError("calendar offline")


def test_news_lock_falls_back_to_synthetic() -> None:
    lock = NewsLock(_BrokenCalendar(), lock_minutes=15)
    check = lock.check("NAS100", datetime(2024, 7, 1, 13, 25, tzinfo=timezone.utc))
    assert check.blocked is True
    assert "US macro release" in check.reason

    missing = NewsLock(FileCalendarProvider("/nonexistent/calendar.json"), lock_minutes=15)
    assert missing.check("XAUUSD", datetime(2024, 7, 1, 13, 25, tzinfo=timezone.utc)).blocked is True


def test_news_lock_filters_by_currency(tmp_path) -> None:
    path = tmp_path / "calendar.json"
    path.write_text(
        json.dumps({"events": [{"title": "ECB rate decision", "currency": "EUR", "impact": "High", "time": "2024-07-01T10:00:00Z"}]}),
        encoding="utf-8",
    )
    lock = NewsLock(
        FileCalendarProvider(path),
        lock_minutes=15,
        symbol_currencies={"XAUUSD": ["USD"]},
    )
    assert lock.currencies_for("EURUSD") == {"EUR", "USD"}
    assert lock.check("XAUUSD", NOW).blocked is False
    blocked = lock.check("EURUSD", NOW)
    assert blocked.blocked is True
    assert blocked.reason == "news lock: ECB rate decision (EUR) at 10:00Z"


class _CalendarResponse:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self.payload


def test_http_calendar_caches_and_filters_impact(monkeypatch) -> None:
    payload = {
        "events": [
            {"event": "CPI", "currency": "usd", "importance": "3", "datetime": "2024-07-01 10:05:00"},
            {"title": "Retail sales", "currency": "USD", "impact": "Low", "time": "2024-07-01T10:00:00Z"},
        ]
    }
    requests_made: list[dict] = []

    def fake_get(url, headers=None, timeout=None):
        requests_made.append(headers)
        return _CalendarResponse(payload)

    monkeypatch.setattr("autopilot.news.calendar_provider.requests.get", fake_get)
    provider = build_calendar_provider(
        provider_name="HTTP",
        file_path="unused.json",
        http_url="https://calendar.test/events",
        http_token="secret",
        timeout_seconds=5,
        cache_ttl_seconds=300,
    )
    assert isinstance(provider, HttpCalendarProvider)

    lock = NewsLock(provider, lock_minutes=15)
    check = lock.check("XAUUSD", NOW)
    assert check.reason == "news lock: CPI (USD) at 10:05Z"
    lock.check("NAS100", NOW)
    assert requests_made == [{"Authorization": "Bearer secret"}]


def test_calendar_provider_selection() -> None:
    common = dict(file_path="calendar.json", http_token=None, timeout_seconds=5, cache_ttl_seconds=60)
    assert isinstance(build_calendar_provider(provider_name="file", http_url=None, **common), FileCalendarProvider)
    assert isinstance(
        build_calendar_provider(provider_name="http", http_url=None, **common), SyntheticCalendarProvider
    )
    assert isinstance(
        build_calendar_provider(provider_name="synthetic", http_url=None, **common), SyntheticCalendarProvider
    )


def test_gate_blocks_on_news(tmp_path) -> None:
    gate, _ = _gate(
        tmp_path,
        RiskConfig(volatility_filter_enabled=False),
        news_lock=NewsLock(SyntheticCalendarProvider("10:05"), lock_minutes=15),
    )
    result = gate.check(BOT, INTENT, NOW)
    assert result.allowed is False
    assert result.reason.startswith("news lock")
