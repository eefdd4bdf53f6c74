from __future__ import annotations

import pytest

from autopilot.execution.sizing import (
    adjusted_entry,
    floor_to_step,
    pnl,
    position_size_from_risk,
    r_multiple,
)


def test_position_size_from_risk() -> None:
    # Risk amount = 10000 * 0.005 = 50, distance = 10 -> size = 5
    size = position_size_from_risk(
        equity=10_000,
        risk_per_trade=0.005,
        entry_price=100,
        stop_price=90,
        min_size=0.01,
        size_step=0.01,
    )
    assert size == pytest.approx(5.0)


def test_position_size_respects_min_and_zero_distance() -> None:
    # 250 * 0.02 = 5 risk over 13 points floors to 0 units, lifted to the minimum of 1
    assert position_size_from_risk(
        equity=250, risk_per_trade=0.02, entry_price=2003, stop_price=1990, min_size=1, size_step=1
    ) == 1
    assert position_size_from_risk(
        equity=250, risk_per_trade=0.02, entry_price=100, stop_price=100, min_size=1, size_step=1
    ) == 0.0


def test_adjusted_entry_worsens_price() -> None:
    # 5 bps slippage + 10 bps fee
    assert adjusted_entry("LONG", 2000, 5, 10) == pytest.approx(2003.0)
    assert adjusted_entry("SHORT", 2000, 5, 10) == pytest.approx(1997.0)


def test_r_multiple_and_pnl() -> None:
    assert r_multiple("LONG", 100, 90, 120) == pytest.approx(2.0)
    assert r_multiple("SHORT", 100, 110, 105) == pytest.approx(-0.5)
    assert r_multiple("LONG", 100, 100, 120) == 0.0
    assert pnl("LONG", 100, 110, 5) == pytest.approx(50.0)
    assert pnl("SHORT", 100, 110, 5) == pytest.approx(-50.0)


def test_floor_to_step() -> None:
    assert floor_to_step(7.9, 1) == 7
    assert floor_to_step(0.129, 0.01) == pytest.approx(0.12)
    with pytest.raises(ValueError):
        floor_to_step(1.0, 0)
