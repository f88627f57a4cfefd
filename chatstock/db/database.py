from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from chatstock.config import DB_PATH

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], sqlite3.Connection]


def get_connection() -> sqlite3.Connection:
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def connection_scope(
    connection_factory: ConnectionFactory = get_connection,
    conn: sqlite3.Connection | None = None,
) -> Iterator[sqlite3.Connection]:
    """Yield ``conn`` when the caller already holds a transaction, else open one.

    The opened connection is used as a context manager, so everything done
    inside the scope commits together or rolls back together.
    """
    if conn is not None:
        yield conn
        return
    with connection_factory() as scoped:
        yield scoped


def init_db(connection_factory: ConnectionFactory = get_connection) -> None:
    with connection_factory() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY,
                username TEXT NOT NULL,
                total_messages INTEGER NOT NULL DEFAULT 0,
                base_value REAL NOT NULL DEFAULT 100.0,
                last_message_time REAL,
                price_modifier REAL NOT NULL DEFAULT 1.0,
                streak_tier INTEGER NOT NULL DEFAULT 0,
                streak_tier_reached REAL NOT NULL DEFAULT 0,
                streak_expired INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS activity_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                timestamp REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS holdings (
                owner_id INTEGER NOT NULL,
                stock_user_id INTEGER NOT NULL,
                shares INTEGER NOT NULL,
                avg_buy_price REAL NOT NULL,
                PRIMARY KEY (owner_id, stock_user_id)
            );

            CREATE TABLE IF NOT EXISTS balances (
                guild_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                bank REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (guild_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                buyer_id INTEGER NOT NULL,
                stock_user_id INTEGER NOT NULL,
                shares INTEGER NOT NULL,
                price REAL NOT NULL,
                transaction_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS price_history (
                user_id INTEGER NOT NULL,
                price REAL NOT NULL,
                timestamp REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS purchase_lots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id INTEGER NOT NULL,
                stock_user_id INTEGER NOT NULL,
                shares INTEGER NOT NULL,
                price REAL NOT NULL,
                timestamp REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pending_impacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stock_user_id INTEGER NOT NULL,
                shares_delta INTEGER NOT NULL,
                timestamp REAL NOT NULL,
                fully_applied INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS active_market_events (
                guild_id INTEGER PRIMARY KEY,
                multiplier REAL NOT NULL,
                percent_change REAL NOT NULL,
                expires_at REAL NOT NULL,
                event_name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS split_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guild_id INTEGER NOT NULL,
                stock_user_id INTEGER NOT NULL,
                split_ratio TEXT NOT NULL,
                price_before REAL NOT NULL,
                price_after REAL NOT NULL,
                split_time REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_activity_user_time ON activity_events (user_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_holdings_stock ON holdings (stock_user_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions (timestamp);
            CREATE INDEX IF NOT EXISTS idx_price_history_user ON price_history (user_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_lots_owner_stock ON purchase_lots (owner_id, stock_user_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_impacts_stock ON pending_impacts (stock_user_id);
            CREATE INDEX IF NOT EXISTS idx_split_history_stock ON split_history (guild_id, stock_user_id);
            """
        )
        _ensure_user_columns(conn)
    logger.info("Database schema ready")


def _ensure_user_columns(conn: sqlite3.Connection) -> None:
    columns = {
        row["name"] if isinstance(row, sqlite3.Row) else row[1]
        for row in conn.execute("PRAGMA table_info(users);").fetchall()
    }
    if not columns:
        return
    if "price_modifier" not in columns:
        conn.execute(
            "ALTER TABLE users ADD COLUMN price_modifier REAL NOT NULL DEFAULT 1.0;"
        )
    if "streak_tier" not in columns:
        conn.execute(
            "ALTER TABLE users ADD COLUMN streak_tier INTEGER NOT NULL DEFAULT 0;"
        )
    if "streak_tier_reached" not in columns:
        conn.execute(
            "ALTER TABLE users ADD COLUMN streak_tier_reached REAL NOT NULL DEFAULT 0;"
        )
    if "streak_expired" not in columns:
        conn.execute(
            "ALTER TABLE users ADD COLUMN streak_expired INTEGER NOT NULL DEFAULT 0;"
        )
