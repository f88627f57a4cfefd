from __future__ import annotations

import sqlite3

_PLACEHOLDER_USERNAME = "Unknown User"


# Users

def create_user(conn: sqlite3.Connection, user_id: int, username: str) -> bool:
    cursor = conn.execute(
        "INSERT OR IGNORE INTO users (user_id, username) VALUES (?, ?)",
        (user_id, username or _PLACEHOLDER_USERNAME),
    )
    created = cursor.rowcount > 0
    if not created and username and username not in {_PLACEHOLDER_USERNAME, str(user_id)}:
        # Replace placeholder names recorded before the real one was known.
        conn.execute(
            """
            UPDATE users
            SET username = ?
            WHERE user_id = ? AND (username = ? OR username = CAST(user_id AS TEXT))
            """,
            (username, user_id, _PLACEHOLDER_USERNAME),
        )
    return created


def get_user(conn: sqlite3.Connection, user_id: int) -> dict | None:
    row = conn.execute(
        """
        SELECT user_id, username, total_messages, base_value, last_message_time,
               price_modifier, streak_tier, streak_tier_reached, streak_expired
        FROM users
        WHERE user_id = ?
        """,
        (user_id,),
    ).fetchone()
    return None if row is None else dict(row)


def get_all_users(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        """
        SELECT user_id, username, total_messages, base_value, last_message_time,
               price_modifier, streak_tier, streak_tier_reached, streak_expired
        FROM users
        ORDER BY user_id ASC
        """
    ).fetchall()
    return [dict(row) for row in rows]


def increment_user_activity(
    conn: sqlite3.Connection,
    user_id: int,
    timestamp: float,
    base_value_increment: float,
) -> None:
    conn.execute(
        """
        UPDATE users
        SET total_messages = total_messages + 1,
            base_value = base_value + ?,
            last_message_time = ?
        WHERE user_id = ?
        """,
        (base_value_increment, timestamp, user_id),
    )


def set_streak_state(
    conn: sqlite3.Connection,
    user_id: int,
    tier: int,
    tier_reached: float,
    expired: bool,
) -> None:
    conn.execute(
        """
        UPDATE users
        SET streak_tier = ?, streak_tier_reached = ?, streak_expired = ?
        WHERE user_id = ?
        """,
        (int(tier), float(tier_reached), 1 if expired else 0, user_id),
    )


def set_price_modifier(conn: sqlite3.Connection, user_id: int, modifier: float) -> None:
    conn.execute(
        "UPDATE users SET price_modifier = ? WHERE user_id = ?",
        (modifier, user_id),
    )


# Activity log

def add_activity_event(conn: sqlite3.Connection, user_id: int, timestamp: float) -> None:
    conn.execute(
        "INSERT INTO activity_events (user_id, timestamp) VALUES (?, ?)",
        (user_id, timestamp),
    )


def get_activity_timestamps(conn: sqlite3.Connection, user_id: int, since: float) -> list[float]:
    rows = conn.execute(
        """
        SELECT timestamp
        FROM activity_events
        WHERE user_id = ? AND timestamp > ?
        ORDER BY timestamp ASC
        """,
        (user_id, since),
    ).fetchall()
    return [float(row["timestamp"]) for row in rows]


def count_activity_since(conn: sqlite3.Connection, user_id: int, since: float) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM activity_events WHERE user_id = ? AND timestamp > ?",
        (user_id, since),
    ).fetchone()
    return int(row["total"] or 0)


# Holdings

def get_holding(conn: sqlite3.Connection, owner_id: int, stock_user_id: int) -> dict | None:
    row = conn.execute(
        """
        SELECT owner_id, stock_user_id, shares, avg_buy_price
        FROM holdings
        WHERE owner_id = ? AND stock_user_id = ?
        """,
        (owner_id, stock_user_id),
    ).fetchone()
    return None if row is None else dict(row)


def get_portfolio(conn: sqlite3.Connection, owner_id: int) -> list[dict]:
    rows = conn.execute(
        """
        SELECT owner_id, stock_user_id, shares, avg_buy_price
        FROM holdings
        WHERE owner_id = ? AND shares > 0
        ORDER BY stock_user_id ASC
        """,
        (owner_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def get_stock_holders(conn: sqlite3.Connection, stock_user_id: int) -> list[dict]:
    rows = conn.execute(
        """
        SELECT owner_id, stock_user_id, shares, avg_buy_price
        FROM holdings
        WHERE stock_user_id = ? AND shares > 0
        ORDER BY owner_id ASC
        """,
        (stock_user_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def get_total_shares(conn: sqlite3.Connection, stock_user_id: int) -> int:
    row = conn.execute(
        "SELECT SUM(shares) AS total FROM holdings WHERE stock_user_id = ? AND shares > 0",
        (stock_user_id,),
    ).fetchone()
    return int(row["total"] or 0)


def add_shares(
    conn: sqlite3.Connection,
    owner_id: int,
    stock_user_id: int,
    shares: int,
    price: float,
) -> int:
    existing = get_holding(conn, owner_id, stock_user_id)
    if existing is None:
        conn.execute(
            """
            INSERT INTO holdings (owner_id, stock_user_id, shares, avg_buy_price)
            VALUES (?, ?, ?, ?)
            """,
            (owner_id, stock_user_id, shares, price),
        )
        return shares
    held = int(existing["shares"])
    new_shares = held + shares
    new_avg = ((held * float(existing["avg_buy_price"])) + (shares * price)) / new_shares
    conn.execute(
        """
        UPDATE holdings
        SET shares = ?, avg_buy_price = ?
        WHERE owner_id = ? AND stock_user_id = ?
        """,
        (new_shares, new_avg, owner_id, stock_user_id),
    )
    return new_shares


def set_shares(conn: sqlite3.Connection, owner_id: int, stock_user_id: int, shares: int) -> None:
    if shares <= 0:
        conn.execute(
            "DELETE FROM holdings WHERE owner_id = ? AND stock_user_id = ?",
            (owner_id, stock_user_id),
        )
        return
    conn.execute(
        "UPDATE holdings SET shares = ? WHERE owner_id = ? AND stock_user_id = ?",
        (shares, owner_id, stock_user_id),
    )


def scale_avg_buy_price(conn: sqlite3.Connection, stock_user_id: int, multiplier: float) -> None:
    conn.execute(
        "UPDATE holdings SET avg_buy_price = avg_buy_price / ? WHERE stock_user_id = ?",
        (multiplier, stock_user_id),
    )


# Balances

def get_balance(conn: sqlite3.Connection, guild_id: int, user_id: int) -> float:
    row = conn.execute(
        "SELECT bank FROM balances WHERE guild_id = ? AND user_id = ?",
        (guild_id, user_id),
    ).fetchone()
    return 0.0 if row is None else float(row["bank"])


def add_to_balance(conn: sqlite3.Connection, guild_id: int, user_id: int, amount: float) -> float:
    conn.execute(
        """
        INSERT INTO balances (guild_id, user_id, bank)
        VALUES (?, ?, ?)
        ON CONFLICT(guild_id, user_id) DO UPDATE SET bank = bank + excluded.bank
        """,
        (guild_id, user_id, amount),
    )
    return get_balance(conn, guild_id, user_id)


# Transaction log and price history

def log_transaction(
    conn: sqlite3.Connection,
    buyer_id: int,
    stock_user_id: int,
    shares: int,
    price: float,
    transaction_type: str,
    timestamp: float,
) -> None:
    conn.execute(
        """
        INSERT INTO transactions (buyer_id, stock_user_id, shares, price, transaction_type, timestamp)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (buyer_id, stock_user_id, shares, price, transaction_type, timestamp),
    )


def log_price(conn: sqlite3.Connection, user_id: int, price: float, timestamp: float) -> None:
    conn.execute(
        "INSERT INTO price_history (user_id, price, timestamp) VALUES (?, ?, ?)",
        (user_id, price, timestamp),
    )


def get_price_history(conn: sqlite3.Connection, user_id: int, limit: int = 20) -> list[dict]:
    rows = conn.execute(
        """
        SELECT user_id, price, timestamp
        FROM price_history
        WHERE user_id = ?
        ORDER BY timestamp DESC
        LIMIT ?
        """,
        (user_id, max(1, int(limit))),
    ).fetchall()
    return [dict(row) for row in rows]


def get_price_history_since(conn: sqlite3.Connection, user_id: int, since: float) -> list[dict]:
    rows = conn.execute(
        """
        SELECT user_id, price, timestamp
        FROM price_history
        WHERE user_id = ? AND timestamp >= ?
        ORDER BY timestamp ASC
        """,
        (user_id, since),
    ).fetchall()
    return [dict(row) for row in rows]


# Purchase lots

def add_purchase_lot(
    conn: sqlite3.Connection,
    owner_id: int,
    stock_user_id: int,
    shares: int,
    price: float,
    timestamp: float,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO purchase_lots (owner_id, stock_user_id, shares, price, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """,
        (owner_id, stock_user_id, shares, price, timestamp),
    )
    return int(cursor.lastrowid)


def get_purchase_lots(conn: sqlite3.Connection, owner_id: int, stock_user_id: int) -> list[dict]:
    rows = conn.execute(
        """
        SELECT id, owner_id, stock_user_id, shares, price, timestamp
        FROM purchase_lots
        WHERE owner_id = ? AND stock_user_id = ? AND shares > 0
        ORDER BY timestamp ASC, id ASC
        """,
        (owner_id, stock_user_id),
    ).fetchall()
    return [dict(row) for row in rows]


def set_lot_shares(conn: sqlite3.Connection, lot_id: int, shares: int) -> None:
    if shares <= 0:
        conn.execute("DELETE FROM purchase_lots WHERE id = ?", (lot_id,))
        return
    conn.execute("UPDATE purchase_lots SET shares = ? WHERE id = ?", (shares, lot_id))


def scale_lot_prices(
    conn: sqlite3.Connection,
    owner_id: int,
    stock_user_id: int,
    multiplier: float,
) -> None:
    conn.execute(
        "UPDATE purchase_lots SET price = price / ? WHERE owner_id = ? AND stock_user_id = ?",
        (multiplier, owner_id, stock_user_id),
    )


# Pending price impacts

def add_pending_impact(
    conn: sqlite3.Connection,
    stock_user_id: int,
    shares_delta: int,
    timestamp: float,
) -> None:
    conn.execute(
        """
        INSERT INTO pending_impacts (stock_user_id, shares_delta, timestamp, fully_applied)
        VALUES (?, ?, ?, 0)
        """,
        (stock_user_id, shares_delta, timestamp),
    )


def get_pending_impacts(conn: sqlite3.Connection, stock_user_id: int) -> list[dict]:
    rows = conn.execute(
        """
        SELECT id, stock_user_id, shares_delta, timestamp, fully_applied
        FROM pending_impacts
        WHERE stock_user_id = ? AND fully_applied = 0
        ORDER BY timestamp ASC, id ASC
        """,
        (stock_user_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def mark_impacts_applied(conn: sqlite3.Connection, impact_ids: list[int]) -> None:
    if not impact_ids:
        return
    placeholders = ",".join(["?"] * len(impact_ids))
    conn.execute(
        f"UPDATE pending_impacts SET fully_applied = 1 WHERE id IN ({placeholders})",
        tuple(impact_ids),
    )


def delete_applied_impacts_before(conn: sqlite3.Connection, cutoff: float) -> int:
    cursor = conn.execute(
        "DELETE FROM pending_impacts WHERE fully_applied = 1 AND timestamp < ?",
        (cutoff,),
    )
    return int(cursor.rowcount or 0)


# Market events

def upsert_market_event(
    conn: sqlite3.Connection,
    guild_id: int,
    multiplier: float,
    percent_change: float,
    expires_at: float,
    event_name: str,
) -> None:
    conn.execute(
        """
        INSERT INTO active_market_events (guild_id, multiplier, percent_change, expires_at, event_name)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(guild_id) DO UPDATE SET
            multiplier = excluded.multiplier,
            percent_change = excluded.percent_change,
            expires_at = excluded.expires_at,
            event_name = excluded.event_name
        """,
        (guild_id, multiplier, percent_change, expires_at, event_name),
    )


def delete_market_event(conn: sqlite3.Connection, guild_id: int) -> None:
    conn.execute("DELETE FROM active_market_events WHERE guild_id = ?", (guild_id,))


def get_market_events(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        """
        SELECT guild_id, multiplier, percent_change, expires_at, event_name
        FROM active_market_events
        """
    ).fetchall()
    return [dict(row) for row in rows]


# Splits

def add_split_history(
    conn: sqlite3.Connection,
    guild_id: int,
    stock_user_id: int,
    split_ratio: str,
    price_before: float,
    price_after: float,
    split_time: float,
) -> None:
    conn.execute(
        """
        INSERT INTO split_history (guild_id, stock_user_id, split_ratio, price_before, price_after, split_time)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (guild_id, stock_user_id, split_ratio, price_before, price_after, split_time),
    )


def get_last_split_time(conn: sqlite3.Connection, guild_id: int, stock_user_id: int) -> float:
    row = conn.execute(
        """
        SELECT MAX(split_time) AS last_split
        FROM split_history
        WHERE guild_id = ? AND stock_user_id = ?
        """,
        (guild_id, stock_user_id),
    ).fetchone()
    return float(row["last_split"] or 0.0)


# Key-value state

def get_state_value(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM app_state WHERE key = ?", (key,)).fetchone()
    return None if row is None else str(row["value"])


def set_state_value(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO app_state (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def insert_state_default(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO app_state (key, value) VALUES (?, ?)",
        (key, value),
    )
