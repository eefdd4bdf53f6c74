from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    if str(path) != ":memory:" and path.parent != Path("."):
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS positions (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            side TEXT NOT NULL,
            symbol TEXT NOT NULL,
            entry_time TEXT NOT NULL,
            entry_price REAL NOT NULL,
            quantity REAL NOT NULL,
            stop_price REAL NOT NULL,
            initial_stop_price REAL NOT NULL,
            take_profit_price REAL NOT NULL,
            strategy_id TEXT NOT NULL,
            method_name TEXT NOT NULL DEFAULT '',
            timeframe TEXT NOT NULL DEFAULT 'M15',
            trail_policy TEXT NOT NULL DEFAULT 'partial_close',
            slippage_bps REAL NOT NULL DEFAULT 0,
            fee_bps REAL NOT NULL DEFAULT 0,
            broker_ref TEXT,
            exit_time TEXT,
            exit_price REAL,
            realized_pnl REAL,
            r_multiple REAL,
            booked_pnl REAL NOT NULL DEFAULT 0,
            stop_change_log TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            delta_amount REAL NOT NULL,
            cash_after REAL NOT NULL,
            ref_type TEXT NOT NULL,
            ref_id TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS signals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            bar_time INTEGER NOT NULL,
            side TEXT NOT NULL,
            strategy_id TEXT NOT NULL,
            price REAL NOT NULL,
            reason TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            UNIQUE (symbol, bar_time, side)
        );

        CREATE TABLE IF NOT EXISTS scheduler_activity (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_run_ts TEXT,
            window_label TEXT NOT NULL DEFAULT '',
            opportunities_found INTEGER NOT NULL DEFAULT 0,
            trades_placed INTEGER NOT NULL DEFAULT 0,
            universe_symbols TEXT NOT NULL DEFAULT '[]',
            messages TEXT NOT NULL DEFAULT '[]'
        );

        CREATE TABLE IF NOT EXISTS explanations (
            position_id TEXT PRIMARY KEY,
            entry_text TEXT NOT NULL,
            beginner_text TEXT NOT NULL,
            exit_reason TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
        CREATE INDEX IF NOT EXISTS idx_positions_strategy ON positions(strategy_id, symbol);
        CREATE INDEX IF NOT EXISTS idx_signals_symbol ON signals(symbol, created_at);
        """
    )
    # Runtime migration support for databases created before these columns existed.
    _ensure_column(conn, "positions", "booked_pnl", "REAL NOT NULL DEFAULT 0")
    _ensure_column(conn, "positions", "trail_policy", "TEXT NOT NULL DEFAULT 'partial_close'")
    conn.commit()
