from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autopilot.config import ContinuousTrailConfig, PartialCloseConfig
from autopilot.execution.trailing import (
    ContinuousTrailPolicy,
    PartialClosePolicy,
    build_policy,
    tightens,
)
from autopilot.storage.models import PositionRecord, StopChange

TS = datetime(2024, 7, 1, 14, 0, tzinfo=timezone.utc)


def _position(side: str = "LONG", entry: float = 100.0, stop: float = 90.0, **overrides) -> PositionRecord:
    fields = dict(
        id="POS-1",
        status="OPEN",
        side=side,
        symbol="NAS100",
        entry_time=TS,
        entry_price=entry,
        quantity=10.0,
        stop_price=stop,
        initial_stop_price=stop,
        take_profit_price=entry + 3 * (entry - stop),
        strategy_id="orb",
    )
    fields.update(overrides)
    return PositionRecord(**fields)


def test_tightens_by_side() -> None:
    assert tightens("LONG", 90, 95) is True
    assert tightens("LONG", 90, 85) is False
    assert tightens("SHORT", 110, 105) is True
    assert tightens("SHORT", 110, 115) is False


def test_partial_close_at_one_r() -> None:
    steps = PartialClosePolicy(PartialCloseConfig()).plan(_position(), 110.0, None)
    assert [step.stage for step in steps] == ["BE", "TP1CLOSE"]
    assert steps[0].new_stop == 100.0
    assert steps[1].close_quantity == 5.0


def test_partial_close_not_repeated_once_logged() -> None:
    position = _position(
        stop_price=100.0,
        quantity=5.0,
        stop_change_log=[
            StopChange(ts=TS, old_stop=90.0, new_stop=100.0, stage="BE"),
            StopChange(ts=TS, old_stop=100.0, new_stop=100.0, stage="TP1CLOSE"),
        ],
    )
    assert PartialClosePolicy(PartialCloseConfig()).plan(position, 110.0, None) == []


def test_jump_to_three_r_runs_every_stage() -> None:
    steps = PartialClosePolicy(PartialCloseConfig()).plan(_position(), 130.0, 2.0)
    assert [step.stage for step in steps] == ["BE", "TP1CLOSE", "TP2CLOSE", "ATR"]
    # half of the remaining 5 units, TP pushed out of reach
    assert steps[2].close_quantity == 2.5
    assert steps[2].new_take_profit == pytest.approx(100_000.0)
    assert steps[3].new_stop == pytest.approx(130.0 - 1.5 * 2.0)


def test_close_sizes_floor_to_quantity_step() -> None:
    policy = PartialClosePolicy(PartialCloseConfig(), quantity_step=1.0)
    steps = policy.plan(_position(quantity=7.0), 130.0, None)
    # 3.5 floors to 3 at TP1, then half of the remaining 4 at TP2
    assert [step.close_quantity for step in steps if step.close_quantity] == [3.0, 2.0]

    single = policy.plan(_position(quantity=1.0), 110.0, None)
    assert [step.stage for step in single] == ["BE", "TP1CLOSE"]
    assert single[1].close_quantity == 0.0
    assert "too small to split" in single[1].note


def test_short_far_take_profit_stays_positive() -> None:
    short = _position(side="SHORT", entry=100.0, stop=110.0, take_profit_price=70.0)
    steps = PartialClosePolicy(PartialCloseConfig()).plan(short, 70.0, None)
    tp2 = [step for step in steps if step.stage == "TP2CLOSE"][0]
    assert tp2.new_take_profit == pytest.approx(0.1)


def test_continuous_picks_tightest_candidate() -> None:
    policy = ContinuousTrailPolicy(ContinuousTrailConfig())
    # 2R with ATR 2: BE 100.0004, LOCK 105, ATR 117.6
    steps = policy.plan(_position(), 120.0, 2.0)
    assert len(steps) == 1
    assert steps[0].stage == "ATR"
    assert steps[0].new_stop == pytest.approx(117.6)

    # 1.5R: ATR not active yet, LOCK beats BE
    steps = policy.plan(_position(), 115.0, 2.0)
    assert steps[0].stage == "LOCK"
    assert steps[0].new_stop == pytest.approx(105.0)


def test_continuous_never_loosens() -> None:
    policy = ContinuousTrailPolicy(ContinuousTrailConfig())
    assert policy.plan(_position(stop_price=118.0), 120.0, 2.0) == []
    assert policy.plan(_position(), 105.0, 2.0) == []


def test_continuous_short() -> None:
    policy = ContinuousTrailPolicy(ContinuousTrailConfig())
    short = _position(side="SHORT", entry=100.0, stop=110.0, take_profit_price=70.0)
    steps = policy.plan(short, 80.0, 2.0)
    assert steps[0].stage == "ATR"
    assert steps[0].new_stop == pytest.approx(82.4)


def test_build_policy_by_name() -> None:
    kwargs = dict(partial_close=PartialCloseConfig(), continuous=ContinuousTrailConfig())
    assert isinstance(build_policy("continuous", **kwargs), ContinuousTrailPolicy)
    assert isinstance(build_policy("partial_close", **kwargs), PartialClosePolicy)
    assert build_policy("partial_close", quantity_step=0.5, **kwargs).quantity_step == 0.5
