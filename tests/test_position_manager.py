from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autopilot.broker.contracts import OrderResult, Quote
from autopilot.broker.errors import BrokerAPIError
from autopilot.broker.paper import PaperBroker
from autopilot.config import AppConfig
from autopilot.data.candles import Candle
from autopilot.execution.position_manager import PositionManager
from autopilot.explain.explainer import TemplateExplainer
from autopilot.storage.db import get_connection, init_db
from autopilot.storage.journal import Journal
from autopilot.storage.models import Explanation, PositionClosedError, PositionRecord, StopChange

TS = datetime(2024, 7, 1, 14, 0, tzinfo=timezone.utc)


class _PriceFeed:
    def __init__(self, price: float, bars: int = 1, half_range: float = 0.0):
        self.price = price
        self.bars = bars
        self.half_range = half_range

    def fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        high = self.price + self.half_range
        low = self.price - self.half_range
        return [
            Candle(time=1_719_842_400 + i * 900, open=self.price, high=high, low=low, close=self.price)
            for i in range(self.bars)
        ]


class _RecordingBroker(PaperBroker):
    def __init__(self, *, mid: float | None = None, fail: bool = False):
        super().__init__()
        self.mid = mid
        self.fail = fail
        self.calls: list[tuple] = []
        self.instruments: list[str | None] = []

    def supports_pricing(self) -> bool:
        return self.mid is not None

    def get_instrument_mid_price(self, instrument: str) -> float:
        return float(self.mid)

    def get_instrument_quote(self, instrument: str) -> Quote:
        return Quote(bid=float(self.mid), ask=float(self.mid))

    def place_market_order(self, instrument, units, stop_loss, take_profit, client_tag=None) -> OrderResult:
        return OrderResult(order_ref="T-1", fill_price=None)

    def update_stop_loss(self, order_ref: str, price: float, instrument: str | None = None) -> None:
        if self.fail:
            raise BrokerAPIError("rejected")
        self.calls.append(("stop", order_ref, price))
        self.instruments.append(instrument)

    def close_trade(self, order_ref: str) -> None:
        self.calls.append(("close", order_ref))

    def close_trade_units(self, order_ref: str, units: float) -> None:
        self.calls.append(("partial", order_ref, units))


def _setup(tmp_path, price: float, broker=None) -> tuple[PositionManager, Journal]:
    conn = get_connection(tmp_path / "autopilot.db")
    init_db(conn)
    journal = Journal(conn)
    manager = PositionManager(
        config=AppConfig(),
        store=journal,
        broker=broker or PaperBroker(),
        candles=_PriceFeed(price),
        explainer=TemplateExplainer(),
    )
    return manager, journal


def _position(**overrides) -> PositionRecord:
    fields = dict(
        id="POS-1",
        status="OPEN",
        side="LONG",
        symbol="XAUUSD",
        entry_time=TS,
        entry_price=100.0,
        quantity=10.0,
        stop_price=90.0,
        initial_stop_price=90.0,
        take_profit_price=130.0,
        strategy_id="london_sweep_xau",
        trail_policy="partial_close",
    )
    fields.update(overrides)
    return PositionRecord(**fields)


def test_partial_close_happens_once(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=110.0)
    journal.add_position(_position())

    first = manager.heartbeat(TS)
    second = manager.heartbeat(TS)

    position = journal.get_position("POS-1")
    assert position is not None
    assert len(first) == 1
    assert second == []
    # half of 10 units closed at 1R: (110 - 100) * 5 = 50 booked
    assert position.quantity == 5.0
    assert position.stop_price == 100.0
    assert position.booked_pnl == pytest.approx(50.0)
    assert [change.stage for change in position.stop_change_log] == ["BE", "TP1CLOSE"]
    assert [(e.ref_type, e.delta_amount) for e in journal.list_ledger()] == [("EXIT", 50.0)]


def test_stop_moves_are_mirrored_to_broker(tmp_path) -> None:
    broker = _RecordingBroker()
    manager, journal = _setup(tmp_path, price=110.0, broker=broker)
    journal.add_position(_position(broker_ref="T-1"))

    manager.heartbeat(TS)
    assert ("stop", "T-1", 100.0) in broker.calls
    assert ("partial", "T-1", 5.0) in broker.calls
    assert broker.instruments == ["XAU_USD"]


def test_broker_stop_failure_keeps_local_stop(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=110.0, broker=_RecordingBroker(fail=True))
    journal.add_position(_position(broker_ref="T-1"))
    manager.heartbeat(TS)
    assert journal.get_position("POS-1").stop_price == 100.0


def test_r_multiple_uses_initial_stop_after_trailing(tmp_path) -> None:
    # stop already trailed to 105; price falls through it
    manager, journal = _setup(tmp_path, price=104.0)
    journal.add_position(_position(stop_price=105.0))

    messages = manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position is not None
    assert position.status == "CLOSED"
    assert position.exit_price == 105.0
    assert position.r_multiple == pytest.approx(0.5)
    assert position.realized_pnl == pytest.approx(50.0)
    assert "closed STOP" in messages[0]


def test_booked_partials_included_in_realized(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=110.0)
    journal.add_position(_position())
    manager.heartbeat(TS)

    manager.candles = _PriceFeed(99.0)
    manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position is not None
    # stopped at break-even: 50 booked + 0 on the last 5 units
    assert position.status == "CLOSED"
    assert position.realized_pnl == pytest.approx(50.0)
    assert position.r_multiple == pytest.approx(0.0)
    assert journal.latest_ledger_balance() == pytest.approx(50.0)


def test_losing_exit_writes_failure_analysis(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=89.0)
    journal.add_position(_position())
    journal.add_explanation(Explanation(position_id="POS-1", entry_text="entry", beginner_text="simple"))

    manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position.realized_pnl == pytest.approx(-100.0)
    assert position.r_multiple == pytest.approx(-1.0)
    explanation = journal.get_explanation("POS-1")
    assert explanation.exit_reason.startswith("Closed by STOP")


def test_take_profit_exit_uses_mid_price(tmp_path) -> None:
    # candles still show 110 but the live mid has reached the target
    broker = _RecordingBroker(mid=131.0)
    manager, journal = _setup(tmp_path, price=110.0, broker=broker)
    journal.add_position(_position(broker_ref="T-1"))

    manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position.status == "CLOSED"
    assert position.exit_price == 130.0
    assert position.r_multiple == pytest.approx(3.0)
    # the broker closes stop/take-profit legs itself
    assert ("close", "T-1") not in broker.calls


def test_closing_twice_is_rejected(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=100.0)
    position = _position()
    journal.add_position(position)
    manager.close_position(position, 101.0, "MANUAL", TS)
    with pytest.raises(PositionClosedError):
        manager.close_position(position, 101.0, "MANUAL", TS)


def test_continuous_policy_position(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=115.0)
    journal.add_position(_position(trail_policy="continuous", symbol="NAS100"))
    manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    # 1.5R locks half the initial risk
    assert position.stop_price == pytest.approx(105.0)
    assert position.quantity == 10.0
    assert position.stop_change_log[-1].stage == "LOCK"


def test_reaching_target_runs_tp2_and_atr_before_exit(tmp_path) -> None:
    manager, journal = _setup(tmp_path, price=131.0)
    manager.candles = _PriceFeed(131.0, bars=60, half_range=1.0)
    journal.add_position(
        _position(
            quantity=5.0,
            stop_price=100.0,
            stop_change_log=[
                StopChange(ts=TS, old_stop=90.0, new_stop=100.0, stage="BE"),
                StopChange(ts=TS, old_stop=100.0, new_stop=100.0, stage="TP1CLOSE"),
            ],
        )
    )

    messages = manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position is not None
    assert position.status == "OPEN"
    assert [change.stage for change in position.stop_change_log][-2:] == ["TP2CLOSE", "ATR"]
    # half of 5 floored to 2 whole units, target pushed out, stop trailed 1.5 x ATR(2) below
    assert position.quantity == 3.0
    assert position.take_profit_price == pytest.approx(100_000.0)
    assert position.stop_price == pytest.approx(128.0)
    assert position.booked_pnl == pytest.approx(62.0)
    assert "TP2CLOSE closed 2 @ 131.00" in messages[0]


def test_trailed_stop_is_checked_in_the_same_heartbeat(tmp_path) -> None:
    # candles give a 3R management price, the live mid is already below the new ATR stop
    broker = _RecordingBroker(mid=127.0)
    manager, journal = _setup(tmp_path, price=131.0, broker=broker)
    manager.candles = _PriceFeed(131.0, bars=60, half_range=1.0)
    journal.add_position(_position(quantity=4.0))

    messages = manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position.status == "CLOSED"
    assert position.exit_price == pytest.approx(128.0)
    assert [change.stage for change in position.stop_change_log] == ["BE", "TP1CLOSE", "TP2CLOSE", "ATR"]
    assert "closed STOP @ 128.00" in messages[0]


def test_one_unit_position_is_not_split(tmp_path) -> None:
    broker = _RecordingBroker()
    manager, journal = _setup(tmp_path, price=110.0, broker=broker)
    journal.add_position(_position(quantity=1.0, broker_ref="T-1"))

    manager.heartbeat(TS)
    manager.heartbeat(TS)
    position = journal.get_position("POS-1")
    assert position.quantity == 1.0
    assert position.stop_price == 100.0
    assert position.booked_pnl == 0.0
    assert [change.stage for change in position.stop_change_log] == ["BE", "TP1CLOSE"]
    assert not [call for call in broker.calls if call[0] == "partial"]
    assert journal.list_ledger() == []
