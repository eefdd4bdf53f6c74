from __future__ import annotations

from datetime import date, datetime
from typing import Protocol

from autopilot.storage.models import (
    Explanation,
    LedgerEntry,
    PositionRecord,
    SchedulerActivity,
    SignalRecord,
)


class Store(Protocol):
    def get_open_positions(self, symbol: str | None = None) -> list[PositionRecord]:
        ...

    def get_position(self, position_id: str) -> PositionRecord | None:
        ...

    def add_position(self, position: PositionRecord) -> None:
        ...

    def update_position(self, position: PositionRecord) -> None:
        ...

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        ...

    def latest_ledger_balance(self) -> float:
        ...

    def list_ledger(self) -> list[LedgerEntry]:
        ...

    def get_signals(self, symbol: str | None = None, limit: int = 100) -> list[SignalRecord]:
        ...

    def add_signal(self, record: SignalRecord) -> bool:
        ...

    def update_scheduler_activity(self, activity: SchedulerActivity) -> None:
        ...

    def get_scheduler_activity(self) -> SchedulerActivity | None:
        ...

    def get_closed_positions_for_strategy(
        self, strategy_name: str, symbol: str | None = None, limit: int = 50
    ) -> list[PositionRecord]:
        ...

    def count_positions_placed_on_day(
        self,
        day: date,
        symbol: str | None = None,
        side: str | None = None,
        strategy_id: str | None = None,
    ) -> int:
        ...

    def add_explanation(self, explanation: Explanation) -> None:
        ...

    def get_explanation(self, position_id: str) -> Explanation | None:
        ...

    def update_explanation(self, position_id: str, exit_reason: str, updated_at: datetime) -> None:
        ...
