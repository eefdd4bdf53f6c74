from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autopilot.broker.contracts import OrderResult
from autopilot.broker.errors import BrokerAPIError
from autopilot.broker.paper import PaperBroker
from autopilot.config import AppConfig, BotConfig, RiskConfig
from autopilot.execution.orders import TradeExecutor
from autopilot.explain.explainer import TemplateExplainer
from autopilot.storage.db import get_connection, init_db
from autopilot.storage.journal import Journal
from autopilot.strategy.contracts import Side, TradeIntent

NOW = datetime(2024, 7, 1, 14, 0, tzinfo=timezone.utc)
BOT = BotConfig(id="orb", kind="orb", symbol="XAUUSD", timeframe="M5")


def _intent(side: Side = Side.LONG) -> TradeIntent:
    if side is Side.LONG:
        entry, stop, target = 2000.0, 1990.0, 2030.0
    else:
        entry, stop, target = 2000.0, 2010.0, 1970.0
    return TradeIntent(
        side=side,
        entry_price=entry,
        stop_price=stop,
        take_profit_price=target,
        reason="breakout above range high",
        strategy_type="ORB",
        slippage_bps=5.0,
        fee_bps=10.0,
        risk_reward_ratio=3.0,
        timeframe="M5",
        bar_time=1_719_842_400,
    )


class _Broker(PaperBroker):
    def __init__(self, *, fill: float | None = None, fail: bool = False):
        super().__init__()
        self.fill = fill
        self.fail = fail
        self.orders: list[dict] = []

    def place_market_order(self, instrument, units, stop_loss, take_profit, client_tag=None) -> OrderResult:
        if self.fail:
            raise BrokerAPIError("market halted")
        self.orders.append(
            {"instrument": instrument, "units": units, "sl": stop_loss, "tp": take_profit, "tag": client_tag}
        )
        return OrderResult(order_ref="T-9", fill_price=self.fill)


class _Notes:
    def __init__(self) -> None:
        self.sent: list[str] = []

    def send(self, *, event: str, message: str, level: str = "info", context=None) -> None:
        self.sent.append(event)


def _executor(tmp_path, broker, risk: RiskConfig | None = None, notifier=None) -> tuple[TradeExecutor, Journal]:
    conn = get_connection(tmp_path / "autopilot.db")
    init_db(conn)
    journal = Journal(conn)
    config = AppConfig(risk=risk or RiskConfig())
    executor = TradeExecutor(
        config=config,
        broker=broker,
        store=journal,
        explainer=TemplateExplainer(),
        notifier=notifier,
    )
    return executor, journal


def test_execute_records_position_fee_and_explanation(tmp_path) -> None:
    notes = _Notes()
    broker = _Broker()
    executor, journal = _executor(tmp_path, broker, notifier=notes)

    result = executor.execute(BOT, _intent(), NOW)
    assert result.placed
    position = result.position
    # 2000 worsened by 15 bps; 5 risk over 13 points lifts to the 1 unit minimum
    assert position.entry_price == pytest.approx(2003.0)
    assert position.quantity == 1
    assert position.initial_stop_price == 1990.0
    assert position.broker_ref == "T-9"
    assert position.trail_policy == "partial_close"
    assert journal.get_open_positions("XAUUSD")[0].id == position.id

    ledger = journal.list_ledger()
    assert [entry.ref_type for entry in ledger] == ["FEE"]
    assert ledger[0].delta_amount == pytest.approx(-2.003)
    explanation = journal.get_explanation(position.id)
    assert explanation is not None
    assert "ORB opened LONG 1 XAUUSD" in explanation.entry_text
    assert notes.sent == ["POSITION_OPENED"]

    order = broker.orders[0]
    assert order["instrument"] == "XAU_USD"
    assert order["units"] == 1
    assert order["tag"] == "autopilot-orb"


def test_size_scales_with_equity_and_multiplier(tmp_path) -> None:
    risk = RiskConfig(base_account=100_000, risk_pct=0.01)
    executor, _ = _executor(tmp_path, _Broker(), risk=risk)
    # 1000 risk / 13 points
    assert executor.execute(BOT, _intent(), NOW).position.quantity == 76

    halved, _ = _executor(tmp_path / "halved", _Broker(), risk=risk)
    assert halved.execute(BOT, _intent(), NOW, risk_multiplier=0.5).position.quantity == 38


def test_short_sends_negative_units(tmp_path) -> None:
    broker = _Broker()
    executor, _ = _executor(tmp_path, broker)
    result = executor.execute(BOT, _intent(Side.SHORT), NOW)
    assert result.position.entry_price == pytest.approx(1997.0)
    assert broker.orders[0]["units"] == -1


def test_broker_fill_price_wins(tmp_path) -> None:
    executor, _ = _executor(tmp_path, _Broker(fill=2001.5))
    assert executor.execute(BOT, _intent(), NOW).position.entry_price == 2001.5


def test_order_failure_records_nothing(tmp_path) -> None:
    executor, journal = _executor(tmp_path, _Broker(fail=True))
    result = executor.execute(BOT, _intent(), NOW)
    assert not result.placed
    assert result.message == "[orb] order failed: market halted"
    assert journal.get_open_positions() == []
    assert journal.list_ledger() == []
