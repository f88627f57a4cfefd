from __future__ import annotations

import sqlite3

from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import get_all_users, get_total_shares
from chatstock.services.money import money
from chatstock.services.valuation import StockValuation


def _ranked_stocks(conn: sqlite3.Connection, valuation: StockValuation, guild_id: int | None) -> list[dict]:
    ranked: list[dict] = []
    for row in get_all_users(conn):
        user_id = int(row["user_id"])
        next_row = dict(row)
        next_row["price"] = valuation.calculate_stock_price(user_id, guild_id, conn=conn)
        next_row["total_shares"] = get_total_shares(conn, user_id)
        ranked.append(next_row)
    ranked.sort(key=lambda r: (-float(r["price"]), int(r["user_id"])))
    return ranked


def get_leaderboard(
    valuation: StockValuation,
    *,
    limit: int = 10,
    guild_id: int | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> list[dict]:
    with connection_scope(connection_factory) as conn:
        ranked = _ranked_stocks(conn, valuation, guild_id)
    return ranked[: max(1, int(limit))]


def get_stock_rank(
    valuation: StockValuation,
    user_id: int,
    *,
    guild_id: int | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> dict | None:
    with connection_scope(connection_factory) as conn:
        ranked = _ranked_stocks(conn, valuation, guild_id)
    for index, row in enumerate(ranked, start=1):
        if int(row["user_id"]) == int(user_id):
            return {"rank": index, "total": len(ranked), "price": float(row["price"])}
    return None


def get_portfolio_values(
    valuation: StockValuation,
    *,
    guild_id: int | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> list[dict]:
    """Every holder's portfolio valued at current prices, richest first."""
    with connection_scope(connection_factory) as conn:
        rows = conn.execute(
            "SELECT owner_id, stock_user_id, shares FROM holdings WHERE shares > 0"
        ).fetchall()
        prices: dict[int, float] = {}
        values: dict[int, float] = {}
        for row in rows:
            stock_user_id = int(row["stock_user_id"])
            if stock_user_id not in prices:
                prices[stock_user_id] = valuation.calculate_stock_price(stock_user_id, guild_id, conn=conn)
            owner_id = int(row["owner_id"])
            values[owner_id] = values.get(owner_id, 0.0) + (int(row["shares"]) * prices[stock_user_id])
    ranked = [
        {"owner_id": owner_id, "value": money(value)}
        for owner_id, value in values.items()
        if value > 0
    ]
    ranked.sort(key=lambda r: (-float(r["value"]), int(r["owner_id"])))
    return ranked


def get_portfolio_rank(
    valuation: StockValuation,
    owner_id: int,
    *,
    guild_id: int | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> dict | None:
    ranked = get_portfolio_values(valuation, guild_id=guild_id, connection_factory=connection_factory)
    for index, row in enumerate(ranked, start=1):
        if int(row["owner_id"]) == int(owner_id):
            return {"rank": index, "total": len(ranked), "value": float(row["value"])}
    return None
