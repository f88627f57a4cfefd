from __future__ import annotations

import logging
import math
import re
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable

from chatstock.config.runtime import GuildSettingsProvider
from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import (
    add_shares,
    add_split_history,
    add_to_balance,
    get_balance,
    get_holding,
    get_last_split_time,
    get_purchase_lots,
    get_stock_holders,
    get_user,
    log_transaction,
    scale_avg_buy_price,
    scale_lot_prices,
    set_lot_shares,
    set_price_modifier,
    set_shares,
)
from chatstock.services.market import INSUFFICIENT_SHARES, MarketProtection, TaxLine
from chatstock.services.money import money
from chatstock.services.valuation import StockValuation

logger = logging.getLogger(__name__)

INVALID_SHARES = "invalid_shares"
INSUFFICIENT_FUNDS = "insufficient_funds"
STALE_QUOTE = "stale_quote"
SPLITS_DISABLED = "splits_disabled"
PRICE_TOO_LOW = "price_too_low"
PRICE_TOO_HIGH = "price_too_high"
SPLIT_COOLDOWN = "split_cooldown"
INVALID_RATIO = "invalid_ratio"

_RATIO_RE = re.compile(r"^\s*(\d+)\s*:\s*(\d+)\s*$")


@dataclass(frozen=True)
class TradeResult:
    ok: bool
    reason: str | None = None
    shares: int = 0
    price: float = 0.0
    gross: float = 0.0
    tax: int = 0
    net: float = 0.0
    balance: float | None = None
    wait_minutes: int = 0
    tax_breakdown: list[TaxLine] = field(default_factory=list)


@dataclass(frozen=True)
class SplitResult:
    ok: bool
    reason: str | None = None
    ratio: str = ""
    multiplier: float = 1.0
    price_before: float = 0.0
    price_after: float = 0.0
    holders_affected: int = 0
    wait_hours: int = 0


def parse_split_ratio(ratio: str) -> tuple[int, int] | None:
    """Parse ``"N:1"`` or ``"1:N"`` with N >= 2; anything else is rejected."""
    match = _RATIO_RE.match(str(ratio))
    if match is None:
        return None
    new_shares, old_shares = int(match.group(1)), int(match.group(2))
    if min(new_shares, old_shares) != 1 or max(new_shares, old_shares) < 2:
        return None
    return new_shares, old_shares


class TradingDesk:
    """Buy, sell and split flows over the valuation engine and market layer.

    Every flow runs inside a single ``connection_scope`` and quotes the price
    once inside it, so the figure a trade settles at is the one it checked.
    """

    def __init__(
        self,
        valuation: StockValuation,
        market: MarketProtection,
        settings: GuildSettingsProvider,
        *,
        clock: Callable[[], float] = time.time,
        connection_factory: ConnectionFactory = get_connection,
    ) -> None:
        self._valuation = valuation
        self._market = market
        self._settings = settings
        self._clock = clock
        self._connection_factory = connection_factory

    def buy(
        self,
        guild_id: int,
        buyer_id: int,
        stock_user_id: int,
        shares: int,
        *,
        expected_price: float | None = None,
    ) -> TradeResult:
        if int(shares) <= 0:
            return TradeResult(ok=False, reason=INVALID_SHARES)
        shares = int(shares)
        with connection_scope(self._connection_factory) as conn:
            price = self._valuation.calculate_stock_price(stock_user_id, guild_id, conn=conn)
            if expected_price is not None and money(expected_price) != price:
                return TradeResult(ok=False, reason=STALE_QUOTE, shares=shares, price=price)
            cost = money(price * shares)
            balance = get_balance(conn, guild_id, buyer_id)
            if balance < cost:
                return TradeResult(
                    ok=False,
                    reason=INSUFFICIENT_FUNDS,
                    shares=shares,
                    price=price,
                    gross=cost,
                    balance=balance,
                )
            balance = add_to_balance(conn, guild_id, buyer_id, -cost)
            add_shares(conn, buyer_id, stock_user_id, shares, price)
            log_transaction(conn, buyer_id, stock_user_id, shares, price, "BUY", self._clock())
            self._market.record_purchase(buyer_id, stock_user_id, shares, price, conn=conn)
            self._market.record_price_impact(stock_user_id, shares, conn=conn)
        logger.info(
            "User %s bought %s shares of %s at %.2f in guild %s",
            buyer_id,
            shares,
            stock_user_id,
            price,
            guild_id,
        )
        return TradeResult(
            ok=True,
            shares=shares,
            price=price,
            gross=cost,
            net=cost,
            balance=balance,
        )

    def preview_sell(self, guild_id: int, seller_id: int, stock_user_id: int, shares: int) -> TradeResult:
        """Quote a sale without changing anything."""
        if int(shares) <= 0:
            return TradeResult(ok=False, reason=INVALID_SHARES)
        shares = int(shares)
        with connection_scope(self._connection_factory) as conn:
            denied = self._check_sellable(conn, guild_id, seller_id, stock_user_id, shares)
            if denied is not None:
                return denied
            price = self._valuation.calculate_stock_price(stock_user_id, guild_id, conn=conn)
            lot_shares = self._lot_shares_to_sell(conn, seller_id, stock_user_id, shares)
            tax = self._market.preview_capital_gains_tax(
                guild_id,
                seller_id,
                stock_user_id,
                lot_shares,
                price,
                conn=conn,
            )
        gross = money(price * shares)
        return TradeResult(
            ok=True,
            shares=shares,
            price=price,
            gross=gross,
            tax=tax.total_tax,
            net=money(gross - tax.total_tax),
            tax_breakdown=tax.breakdown,
        )

    def sell(
        self,
        guild_id: int,
        seller_id: int,
        stock_user_id: int,
        shares: int,
        *,
        expected_price: float | None = None,
    ) -> TradeResult:
        if int(shares) <= 0:
            return TradeResult(ok=False, reason=INVALID_SHARES)
        shares = int(shares)
        with connection_scope(self._connection_factory) as conn:
            denied = self._check_sellable(conn, guild_id, seller_id, stock_user_id, shares)
            if denied is not None:
                return denied
            price = self._valuation.calculate_stock_price(stock_user_id, guild_id, conn=conn)
            if expected_price is not None and money(expected_price) != price:
                return TradeResult(ok=False, reason=STALE_QUOTE, shares=shares, price=price)

            held = int(get_holding(conn, seller_id, stock_user_id)["shares"])
            lot_shares = self._lot_shares_to_sell(conn, seller_id, stock_user_id, shares)
            consumed = self._market.consume_purchase_shares(seller_id, stock_user_id, lot_shares, conn=conn)
            tax = self._market.calculate_capital_gains_tax(guild_id, consumed, price, conn=conn)
            set_shares(conn, seller_id, stock_user_id, held - shares)

            gross = money(price * shares)
            net = money(gross - tax.total_tax)
            log_transaction(conn, seller_id, stock_user_id, shares, price, "SELL", self._clock())
            self._market.record_price_impact(stock_user_id, -shares, conn=conn)
            balance = add_to_balance(conn, guild_id, seller_id, net)
        logger.info(
            "User %s sold %s shares of %s at %.2f in guild %s (tax %s)",
            seller_id,
            shares,
            stock_user_id,
            price,
            guild_id,
            tax.total_tax,
        )
        return TradeResult(
            ok=True,
            shares=shares,
            price=price,
            gross=gross,
            tax=tax.total_tax,
            net=net,
            balance=balance,
            tax_breakdown=tax.breakdown,
        )

    def split(self, guild_id: int, stock_user_id: int, ratio: str) -> SplitResult:
        parsed = parse_split_ratio(ratio)
        if parsed is None:
            return SplitResult(ok=False, reason=INVALID_RATIO, ratio=str(ratio))
        new_shares, old_shares = parsed
        ratio_text = f"{new_shares}:{old_shares}"
        multiplier = new_shares / old_shares
        now = self._clock()

        with connection_scope(self._connection_factory) as conn:
            settings = self._settings.splits(guild_id, conn=conn)
            if not settings.splits_enabled:
                return SplitResult(ok=False, reason=SPLITS_DISABLED, ratio=ratio_text)
            price = self._valuation.calculate_stock_price(stock_user_id, guild_id, conn=conn)
            if multiplier > 1 and price < settings.split_min_price:
                return SplitResult(ok=False, reason=PRICE_TOO_LOW, ratio=ratio_text, price_before=price)
            if multiplier < 1:
                if settings.reverse_split_max_price <= 0:
                    return SplitResult(ok=False, reason=SPLITS_DISABLED, ratio=ratio_text)
                if price > settings.reverse_split_max_price:
                    return SplitResult(ok=False, reason=PRICE_TOO_HIGH, ratio=ratio_text, price_before=price)

            last_split = get_last_split_time(conn, guild_id, stock_user_id)
            cooldown_seconds = settings.split_cooldown_hours * 3600.0
            if last_split > 0 and now - last_split < cooldown_seconds:
                return SplitResult(
                    ok=False,
                    reason=SPLIT_COOLDOWN,
                    ratio=ratio_text,
                    price_before=price,
                    wait_hours=math.ceil((cooldown_seconds - (now - last_split)) / 3600.0),
                )

            holders = get_stock_holders(conn, stock_user_id)
            for holder in holders:
                owner_id = int(holder["owner_id"])
                held = int(holder["shares"])
                new_count = math.floor(held * multiplier)
                set_shares(conn, owner_id, stock_user_id, new_count)
                _rescale_lots(conn, owner_id, stock_user_id, held, new_count, multiplier)
            scale_avg_buy_price(conn, stock_user_id, multiplier)

            user = get_user(conn, stock_user_id)
            if user is not None:
                modifier = float(user.get("price_modifier") or 1.0)
                set_price_modifier(conn, stock_user_id, modifier / multiplier)

            price_after = money(price / multiplier)
            add_split_history(conn, guild_id, stock_user_id, ratio_text, price, price_after, now)

        logger.info(
            "Split %s executed for %s in guild %s (%.2f -> %.2f, %s holders)",
            ratio_text,
            stock_user_id,
            guild_id,
            price,
            price_after,
            len(holders),
        )
        return SplitResult(
            ok=True,
            ratio=ratio_text,
            multiplier=multiplier,
            price_before=price,
            price_after=price_after,
            holders_affected=len(holders),
        )

    def _check_sellable(
        self,
        conn: sqlite3.Connection,
        guild_id: int,
        seller_id: int,
        stock_user_id: int,
        shares: int,
    ) -> TradeResult | None:
        holding = get_holding(conn, seller_id, stock_user_id)
        held = 0 if holding is None else int(holding["shares"])
        if held < shares:
            return TradeResult(ok=False, reason=INSUFFICIENT_SHARES, shares=shares)
        check = self._market.check_sell_cooldown(
            guild_id,
            seller_id,
            stock_user_id,
            shares,
            held,
            conn=conn,
        )
        if not check.can_sell:
            return TradeResult(
                ok=False,
                reason=check.reason,
                shares=shares,
                wait_minutes=check.wait_minutes,
            )
        return None

    def _lot_shares_to_sell(
        self,
        conn: sqlite3.Connection,
        seller_id: int,
        stock_user_id: int,
        shares: int,
    ) -> int:
        # Untracked shares predate the lot ledger and are the oldest, so they go first.
        holding = get_holding(conn, seller_id, stock_user_id)
        held = 0 if holding is None else int(holding["shares"])
        tracked = sum(int(lot["shares"]) for lot in get_purchase_lots(conn, seller_id, stock_user_id))
        untracked = max(0, held - tracked)
        return max(0, shares - untracked)


def _rescale_lots(
    conn: sqlite3.Connection,
    owner_id: int,
    stock_user_id: int,
    held_before: int,
    held_after: int,
    multiplier: float,
) -> None:
    lots = get_purchase_lots(conn, owner_id, stock_user_id)
    if not lots:
        return
    tracked = sum(int(lot["shares"]) for lot in lots)
    untracked_after = math.floor(max(0, held_before - tracked) * multiplier)
    target = min(held_after, max(0, held_after - untracked_after))
    scaled = [math.floor(int(lot["shares"]) * multiplier) for lot in lots]
    # Flooring per lot can only lose shares; the newest lot absorbs the difference.
    scaled[-1] += target - sum(scaled)
    for lot, count in zip(lots, scaled):
        set_lot_shares(conn, int(lot["id"]), count)
    scale_lot_prices(conn, owner_id, stock_user_id, multiplier)
