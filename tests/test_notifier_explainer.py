from __future__ import annotations

from datetime import datetime, timezone

import requests

from autopilot.config import NotificationsConfig
from autopilot.explain.explainer import TemplateExplainer
from autopilot.monitoring.notifier import Notifier
from autopilot.storage.models import PositionRecord, StopChange
from autopilot.strategy.contracts import Side, TradeIntent

TS = datetime(2024, 7, 1, 14, 0, tzinfo=timezone.utc)


class _Posted:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url, json=None, timeout=None):
        self.calls.append((url, json))
        if self.fail:
            raise requests.ConnectionError("webhook down")
        return _Ok()


class _Ok:
    def raise_for_status(self) -> None:
        return None


def test_disabled_notifier_posts_nothing(monkeypatch) -> None:
    posted = _Posted()
    monkeypatch.setattr("autopilot.monitoring.notifier.requests.post", posted)
    Notifier(NotificationsConfig(enabled=False, webhook_url="https://hooks.test/x")).send(event="E", message="m")
    assert posted.calls == []


def test_notifier_fans_out_to_configured_channels(monkeypatch) -> None:
    posted = _Posted()
    monkeypatch.setattr("autopilot.monitoring.notifier.requests.post", posted)
    config = NotificationsConfig(
        webhook_url="https://hooks.test/x",
        telegram_bot_token="123:abc",
        telegram_chat_id="42",
    )
    Notifier(config).send(event="POSITION_OPENED", message="opened", context={"position": "POS-1"})

    urls = [url for url, _ in posted.calls]
    assert urls == ["https://hooks.test/x", "https://api.telegram.org/bot123:abc/sendMessage"]
    webhook_payload = posted.calls[0][1]
    assert webhook_payload["event"] == "POSITION_OPENED"
    assert webhook_payload["text"] == "[INFO] POSITION_OPENED: opened | position=POS-1"


def test_notifier_swallows_transport_errors(monkeypatch) -> None:
    posted = _Posted(fail=True)
    monkeypatch.setattr("autopilot.monitoring.notifier.requests.post", posted)
    Notifier(NotificationsConfig(discord_webhook="https://discord.test/hook")).send(event="E", message="m")
    assert len(posted.calls) == 1


def test_entry_and_beginner_text() -> None:
    intent = TradeIntent(
        side=Side.SHORT,
        entry_price=18000.0,
        stop_price=18050.0,
        take_profit_price=17850.0,
        reason="sweep of 18040.00",
        strategy_type="London Sweep",
        slippage_bps=0.0,
        fee_bps=0.0,
        risk_reward_ratio=3.0,
        timeframe="M5",
        bar_time=1,
    )
    explainer = TemplateExplainer()
    entry = explainer.entry_text("NAS100", intent, 2)
    assert entry.startswith("London Sweep opened SHORT 2 NAS100 at 18000.00.")
    assert "(50.00 risk)" in entry
    assert entry.endswith("Setup: sweep of 18040.00")
    assert "expects NAS100 to fall" in explainer.beginner_text("NAS100", intent)


def test_failure_analysis() -> None:
    position = PositionRecord(
        id="POS-1",
        status="CLOSED",
        side="LONG",
        symbol="XAUUSD",
        entry_time=TS,
        entry_price=100.0,
        quantity=5.0,
        stop_price=100.0,
        initial_stop_price=90.0,
        take_profit_price=130.0,
        strategy_id="orb",
        exit_price=100.0,
        r_multiple=0.0,
    )
    explainer = TemplateExplainer()
    assert explainer.failure_analysis(position, "STOP").startswith("Closed by STOP at 100.0. Result 0.00R.")

    position.stop_change_log = [StopChange(ts=TS, old_stop=90.0, new_stop=100.0, stage="BE")]
    position.booked_pnl = 50.0
    text = explainer.failure_analysis(position, "STOP")
    assert "reversed after the stop was trailed" in text
    assert text.endswith("Partial profits of 50.00 were booked before the exit.")
