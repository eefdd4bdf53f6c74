from __future__ import annotations

import json
import sqlite3
import threading
from datetime import date, datetime, timezone

from autopilot.storage.models import (
    Explanation,
    LedgerEntry,
    PositionClosedError,
    PositionRecord,
    SchedulerActivity,
    SignalRecord,
    StopChange,
)


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Journal:
    """SQLite-backed store for positions, the cash ledger, signals and activity."""

    def __init__(self, conn: sqlite3.Connection, *, max_messages: int = 50):
        self.conn = conn
        self.lock = threading.Lock()
        self.max_messages = max_messages

    # positions

    def add_position(self, position: PositionRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO positions (
                    id, status, side, symbol, entry_time, entry_price, quantity, stop_price,
                    initial_stop_price, take_profit_price, strategy_id, method_name, timeframe,
                    trail_policy, slippage_bps, fee_bps, broker_ref, exit_time, exit_price,
                    realized_pnl, r_multiple, booked_pnl, stop_change_log
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    position.id,
                    position.status,
                    position.side,
                    position.symbol,
                    _to_iso(position.entry_time),
                    position.entry_price,
                    position.quantity,
                    position.stop_price,
                    position.initial_stop_price,
                    position.take_profit_price,
                    position.strategy_id,
                    position.method_name,
                    position.timeframe,
                    position.trail_policy,
                    position.slippage_bps,
                    position.fee_bps,
                    position.broker_ref,
                    _to_iso(position.exit_time),
                    position.exit_price,
                    position.realized_pnl,
                    position.r_multiple,
                    position.booked_pnl,
                    json.dumps([change.to_dict() for change in position.stop_change_log]),
                ),
            )
            self.conn.commit()

    def update_position(self, position: PositionRecord) -> None:
        """Persist mutable fields. Closed rows and the initial stop are never rewritten."""
        with self.lock:
            row = self.conn.execute(
                "SELECT status FROM positions WHERE id = ?",
                (position.id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"unknown position {position.id}")
            if row["status"] == "CLOSED":
                raise PositionClosedError(f"position {position.id} is already closed")
            self.conn.execute(
                """
                UPDATE positions SET
                    status = ?, quantity = ?, stop_price = ?, take_profit_price = ?,
                    broker_ref = ?, exit_time = ?, exit_price = ?, realized_pnl = ?,
                    r_multiple = ?, booked_pnl = ?, stop_change_log = ?
                WHERE id = ?
                """,
                (
                    position.status,
                    position.quantity,
                    position.stop_price,
                    position.take_profit_price,
                    position.broker_ref,
                    _to_iso(position.exit_time),
                    position.exit_price,
                    position.realized_pnl,
                    position.r_multiple,
                    position.booked_pnl,
                    json.dumps([change.to_dict() for change in position.stop_change_log]),
                    position.id,
                ),
            )
            self.conn.commit()

    def get_position(self, position_id: str) -> PositionRecord | None:
        row = self.conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_position(row)

    def get_open_positions(self, symbol: str | None = None) -> list[PositionRecord]:
        if symbol:
            rows = self.conn.execute(
                "SELECT * FROM positions WHERE status = 'OPEN' AND symbol = ? ORDER BY entry_time ASC",
                (symbol,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM positions WHERE status = 'OPEN' ORDER BY entry_time ASC"
            ).fetchall()
        return [self._row_to_position(row) for row in rows]

    def get_closed_positions_for_strategy(
        self, strategy_name: str, symbol: str | None = None, limit: int = 50
    ) -> list[PositionRecord]:
        query = "SELECT * FROM positions WHERE status = 'CLOSED' AND (strategy_id = ? OR method_name = ?)"
        params: list[object] = [strategy_name, strategy_name]
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        query += " ORDER BY exit_time DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_position(row) for row in rows]

    def count_positions_placed_on_day(
        self,
        day: date,
        symbol: str | None = None,
        side: str | None = None,
        strategy_id: str | None = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM positions WHERE substr(entry_time, 1, 10) = ?"
        params: list[object] = [day.isoformat()]
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        if side:
            query += " AND side = ?"
            params.append(side)
        if strategy_id:
            query += " AND strategy_id = ?"
            params.append(strategy_id)
        row = self.conn.execute(query, params).fetchone()
        return int(row[0])

    # ledger

    def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry; ``cash_after`` is always derived from the previous row."""
        with self.lock:
            row = self.conn.execute("SELECT cash_after FROM ledger ORDER BY id DESC LIMIT 1").fetchone()
            previous = float(row["cash_after"]) if row is not None else 0.0
            cash_after = previous + entry.delta_amount
            cursor = self.conn.execute(
                "INSERT INTO ledger (ts, delta_amount, cash_after, ref_type, ref_id) VALUES (?, ?, ?, ?, ?)",
                (_to_iso(entry.ts), entry.delta_amount, cash_after, entry.ref_type, entry.ref_id),
            )
            self.conn.commit()
        return LedgerEntry(
            id=cursor.lastrowid,
            ts=entry.ts,
            delta_amount=entry.delta_amount,
            cash_after=cash_after,
            ref_type=entry.ref_type,
            ref_id=entry.ref_id,
        )

    def latest_ledger_balance(self) -> float:
        row = self.conn.execute("SELECT cash_after FROM ledger ORDER BY id DESC LIMIT 1").fetchone()
        return float(row["cash_after"]) if row is not None else 0.0

    def list_ledger(self) -> list[LedgerEntry]:
        rows = self.conn.execute("SELECT * FROM ledger ORDER BY id ASC").fetchall()
        return [
            LedgerEntry(
                id=int(row["id"]),
                ts=_from_iso(row["ts"]) or datetime.now(timezone.utc),
                delta_amount=float(row["delta_amount"]),
                cash_after=float(row["cash_after"]),
                ref_type=row["ref_type"],
                ref_id=row["ref_id"],
            )
            for row in rows
        ]

    # signals

    def add_signal(self, record: SignalRecord) -> bool:
        """False when the (symbol, bar_time, side) fingerprint was already recorded."""
        with self.lock:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO signals (symbol, bar_time, side, strategy_id, price, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.symbol,
                    record.bar_time,
                    record.side,
                    record.strategy_id,
                    record.price,
                    record.reason,
                    _to_iso(record.created_at),
                ),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def get_signals(self, symbol: str | None = None, limit: int = 100) -> list[SignalRecord]:
        if symbol:
            rows = self.conn.execute(
                "SELECT * FROM signals WHERE symbol = ? ORDER BY id DESC LIMIT ?",
                (symbol, limit),
            ).fetchall()
        else:
            rows = self.conn.execute("SELECT * FROM signals ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            SignalRecord(
                symbol=row["symbol"],
                bar_time=int(row["bar_time"]),
                side=row["side"],
                strategy_id=row["strategy_id"],
                price=float(row["price"]),
                reason=row["reason"],
                created_at=_from_iso(row["created_at"]) or datetime.now(timezone.utc),
            )
            for row in rows
        ]

    # scheduler activity

    def update_scheduler_activity(self, activity: SchedulerActivity) -> None:
        messages = activity.messages[-self.max_messages :]
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO scheduler_activity (
                    id, last_run_ts, window_label, opportunities_found, trades_placed,
                    universe_symbols, messages
                ) VALUES (1, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_run_ts=excluded.last_run_ts,
                    window_label=excluded.window_label,
                    opportunities_found=excluded.opportunities_found,
                    trades_placed=excluded.trades_placed,
                    universe_symbols=excluded.universe_symbols,
                    messages=excluded.messages
                """,
                (
                    _to_iso(activity.last_run_ts),
                    activity.window,
                    activity.opportunities_found,
                    activity.trades_placed,
                    json.dumps(activity.universe_symbols),
                    json.dumps(messages),
                ),
            )
            self.conn.commit()

    def get_scheduler_activity(self) -> SchedulerActivity | None:
        row = self.conn.execute("SELECT * FROM scheduler_activity WHERE id = 1").fetchone()
        if row is None:
            return None
        return SchedulerActivity(
            last_run_ts=_from_iso(row["last_run_ts"]),
            window=row["window_label"],
            opportunities_found=int(row["opportunities_found"]),
            trades_placed=int(row["trades_placed"]),
            universe_symbols=json.loads(row["universe_symbols"] or "[]"),
            messages=json.loads(row["messages"] or "[]"),
        )

    # explanations

    def add_explanation(self, explanation: Explanation) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO explanations (position_id, entry_text, beginner_text, exit_reason, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(position_id) DO UPDATE SET
                    entry_text=excluded.entry_text,
                    beginner_text=excluded.beginner_text,
                    exit_reason=excluded.exit_reason,
                    updated_at=excluded.updated_at
                """,
                (
                    explanation.position_id,
                    explanation.entry_text,
                    explanation.beginner_text,
                    explanation.exit_reason,
                    _to_iso(explanation.updated_at or datetime.now(timezone.utc)),
                ),
            )
            self.conn.commit()

    def get_explanation(self, position_id: str) -> Explanation | None:
        row = self.conn.execute(
            "SELECT * FROM explanations WHERE position_id = ?",
            (position_id,),
        ).fetchone()
        if row is None:
            return None
        return Explanation(
            position_id=row["position_id"],
            entry_text=row["entry_text"],
            beginner_text=row["beginner_text"],
            exit_reason=row["exit_reason"],
            updated_at=_from_iso(row["updated_at"]),
        )

    def update_explanation(self, position_id: str, exit_reason: str, updated_at: datetime) -> None:
        with self.lock:
            self.conn.execute(
                "UPDATE explanations SET exit_reason = ?, updated_at = ? WHERE position_id = ?",
                (exit_reason, _to_iso(updated_at), position_id),
            )
            self.conn.commit()

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> PositionRecord:
        return PositionRecord(
            id=row["id"],
            status=row["status"],
            side=row["side"],
            symbol=row["symbol"],
            entry_time=_from_iso(row["entry_time"]) or datetime.now(timezone.utc),
            entry_price=float(row["entry_price"]),
            quantity=float(row["quantity"]),
            stop_price=float(row["stop_price"]),
            initial_stop_price=float(row["initial_stop_price"]),
            take_profit_price=float(row["take_profit_price"]),
            strategy_id=row["strategy_id"],
            method_name=row["method_name"],
            timeframe=row["timeframe"],
            trail_policy=row["trail_policy"],
            slippage_bps=float(row["slippage_bps"]),
            fee_bps=float(row["fee_bps"]),
            broker_ref=row["broker_ref"],
            exit_time=_from_iso(row["exit_time"]),
            exit_price=float(row["exit_price"]) if row["exit_price"] is not None else None,
            realized_pnl=float(row["realized_pnl"]) if row["realized_pnl"] is not None else None,
            r_multiple=float(row["r_multiple"]) if row["r_multiple"] is not None else None,
            booked_pnl=float(row["booked_pnl"]),
            stop_change_log=[StopChange.from_dict(item) for item in json.loads(row["stop_change_log"] or "[]")],
        )
