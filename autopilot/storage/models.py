from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

STOP_STAGES = ("BE", "TP1CLOSE", "TP2CLOSE", "LOCK", "ATR")


class PositionClosedError(RuntimeError):
    """Raised when something tries to modify a position that is already closed."""


@dataclass(slots=True)
class StopChange:
    ts: datetime
    old_stop: float
    new_stop: float
    stage: str
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "old_stop": self.old_stop,
            "new_stop": self.new_stop,
            "stage": self.stage,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StopChange":
        return cls(
            ts=datetime.fromisoformat(str(payload["ts"])),
            old_stop=float(payload["old_stop"]),
            new_stop=float(payload["new_stop"]),
            stage=str(payload["stage"]),
            note=str(payload.get("note", "")),
        )


@dataclass(slots=True)
class PositionRecord:
    id: str
    status: str
    side: str
    symbol: str
    entry_time: datetime
    entry_price: float
    quantity: float
    stop_price: float
    initial_stop_price: float
    take_profit_price: float
    strategy_id: str
    method_name: str = ""
    timeframe: str = "M15"
    trail_policy: str = "partial_close"
    slippage_bps: float = 0.0
    fee_bps: float = 0.0
    broker_ref: str | None = None
    exit_time: datetime | None = None
    exit_price: float | None = None
    realized_pnl: float | None = None
    r_multiple: float | None = None
    booked_pnl: float = 0.0
    stop_change_log: list[StopChange] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    @property
    def direction(self) -> int:
        return 1 if self.side == "LONG" else -1

    @property
    def initial_risk(self) -> float:
        return abs(self.entry_price - self.initial_stop_price)

    def has_stage(self, stage: str) -> bool:
        return any(change.stage == stage for change in self.stop_change_log)


@dataclass(slots=True)
class LedgerEntry:
    ts: datetime
    delta_amount: float
    ref_type: str
    ref_id: str
    cash_after: float = 0.0
    id: int | None = None


@dataclass(slots=True)
class SignalRecord:
    symbol: str
    bar_time: int
    side: str
    strategy_id: str
    price: float
    created_at: datetime
    reason: str = ""


@dataclass(slots=True)
class SchedulerActivity:
    last_run_ts: datetime | None = None
    window: str = ""
    opportunities_found: int = 0
    trades_placed: int = 0
    universe_symbols: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Explanation:
    position_id: str
    entry_text: str
    beginner_text: str
    exit_reason: str | None = None
    updated_at: datetime | None = None
