from __future__ import annotations

import logging
import math
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from chatstock.config.runtime import GuildSettingsProvider, MarketSettings, get_app_config
from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import (
    add_pending_impact,
    add_purchase_lot,
    delete_applied_impacts_before,
    get_pending_impacts,
    get_purchase_lots,
    mark_impacts_applied,
    set_lot_shares,
)
from chatstock.services.money import whole

logger = logging.getLogger(__name__)

COOLDOWN_DENIED = "cooldown"
INSUFFICIENT_SHARES = "insufficient_shares"


@dataclass(frozen=True)
class ConsumedLot:
    shares: int
    price: float
    timestamp: float
    lot_id: int | None = None


@dataclass(frozen=True)
class SellCooldownCheck:
    can_sell: bool
    reason: str | None = None
    wait_minutes: int = 0
    available_shares: int = 0
    cooldown_minutes: int = 0


@dataclass(frozen=True)
class TaxLine:
    shares: int
    buy_price: float
    profit: float
    hold_hours: int
    is_short_term: bool
    tax_rate: float
    tax: int


@dataclass(frozen=True)
class CapitalGainsTax:
    total_tax: int = 0
    breakdown: list[TaxLine] = field(default_factory=list)


def take_fifo(lots: Iterable[dict], shares_to_sell: int) -> list[ConsumedLot]:
    """Walk ``lots`` oldest first and take ``shares_to_sell`` units from them."""
    taken: list[ConsumedLot] = []
    remaining = int(shares_to_sell)
    for lot in lots:
        if remaining <= 0:
            break
        take = min(int(lot["shares"]), remaining)
        if take <= 0:
            continue
        taken.append(
            ConsumedLot(
                shares=take,
                price=float(lot["price"]),
                timestamp=float(lot["timestamp"]),
                lot_id=lot.get("id"),
            )
        )
        remaining -= take
    return taken


def tax_on_lots(
    settings: MarketSettings,
    consumed: Iterable[ConsumedLot],
    sale_price: float,
    now: float,
) -> CapitalGainsTax:
    if not settings.capital_gains_tax_enabled:
        return CapitalGainsTax()
    short_term_seconds = settings.short_term_threshold_hours * 3600.0
    total = 0
    breakdown: list[TaxLine] = []
    for lot in consumed:
        held = now - lot.timestamp
        is_short_term = held < short_term_seconds
        rate = settings.short_term_tax_percent if is_short_term else settings.long_term_tax_percent
        profit = (float(sale_price) - lot.price) * lot.shares
        # Losses are never taxed and never offset other lots.
        if profit <= 0 or rate <= 0:
            continue
        tax = whole(profit * (rate / 100.0))
        total += tax
        breakdown.append(
            TaxLine(
                shares=lot.shares,
                buy_price=lot.price,
                profit=profit,
                hold_hours=int(held // 3600),
                is_short_term=is_short_term,
                tax_rate=rate,
                tax=tax,
            )
        )
    return CapitalGainsTax(total_tax=total, breakdown=breakdown)


class MarketProtection:
    """Sell cooldowns, delayed price impact and capital gains tax lots."""

    def __init__(
        self,
        settings: GuildSettingsProvider,
        *,
        clock: Callable[[], float] = time.time,
        connection_factory: ConnectionFactory = get_connection,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._connection_factory = connection_factory

    def settings(
        self,
        guild_id: int | None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> MarketSettings:
        return self._settings.market(guild_id, conn=conn)

    # Purchase lots

    def record_purchase(
        self,
        buyer_id: int,
        stock_user_id: int,
        shares: int,
        price: float,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with connection_scope(self._connection_factory, conn) as scoped:
            add_purchase_lot(scoped, buyer_id, stock_user_id, shares, price, self._clock())

    def get_purchase_lots(
        self,
        buyer_id: int,
        stock_user_id: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict]:
        with connection_scope(self._connection_factory, conn) as scoped:
            return get_purchase_lots(scoped, buyer_id, stock_user_id)

    def consume_purchase_shares(
        self,
        buyer_id: int,
        stock_user_id: int,
        shares_to_sell: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[ConsumedLot]:
        with connection_scope(self._connection_factory, conn) as scoped:
            lots = get_purchase_lots(scoped, buyer_id, stock_user_id)
            consumed = take_fifo(lots, shares_to_sell)
            remaining_by_id = {int(lot["id"]): int(lot["shares"]) for lot in lots}
            for part in consumed:
                set_lot_shares(scoped, int(part.lot_id), remaining_by_id[int(part.lot_id)] - part.shares)
        return consumed

    # Sell cooldown

    def check_sell_cooldown(
        self,
        guild_id: int,
        user_id: int,
        stock_user_id: int,
        shares_to_sell: int,
        total_shares_owned: int | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> SellCooldownCheck:
        settings = self.settings(guild_id, conn=conn)
        if not settings.sell_cooldown_enabled:
            return SellCooldownCheck(can_sell=True)

        cooldown_seconds = settings.sell_cooldown_minutes * 60.0
        now = self._clock()
        lots = self.get_purchase_lots(user_id, stock_user_id, conn=conn)
        tracked = sum(int(lot["shares"]) for lot in lots)
        # Shares held from before lot tracking carry no cooldown.
        available = max(0, int(total_shares_owned) - tracked) if total_shares_owned is not None else 0
        first_locked_until: float | None = None
        for lot in lots:
            if now - float(lot["timestamp"]) >= cooldown_seconds:
                available += int(lot["shares"])
            elif first_locked_until is None:
                first_locked_until = float(lot["timestamp"]) + cooldown_seconds

        if available >= shares_to_sell:
            return SellCooldownCheck(can_sell=True, available_shares=available)
        if first_locked_until is None:
            return SellCooldownCheck(
                can_sell=False,
                reason=INSUFFICIENT_SHARES,
                available_shares=available,
                cooldown_minutes=settings.sell_cooldown_minutes,
            )
        wait_seconds = round(first_locked_until - now, 3)
        return SellCooldownCheck(
            can_sell=False,
            reason=COOLDOWN_DENIED,
            wait_minutes=max(1, math.ceil(wait_seconds / 60.0)),
            available_shares=available,
            cooldown_minutes=settings.sell_cooldown_minutes,
        )

    # Price impact delay

    def record_price_impact(
        self,
        stock_user_id: int,
        shares_delta: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        with connection_scope(self._connection_factory, conn) as scoped:
            add_pending_impact(scoped, stock_user_id, shares_delta, self._clock())

    def get_effective_share_count(
        self,
        guild_id: int,
        stock_user_id: int,
        actual_shares: float,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> float:
        settings = self.settings(guild_id, conn=conn)
        if not settings.price_impact_enabled:
            return actual_shares

        delay_seconds = settings.price_impact_delay_minutes * 60.0
        now = self._clock()
        with connection_scope(self._connection_factory, conn) as scoped:
            impacts = get_pending_impacts(scoped, stock_user_id)
            unapplied = 0.0
            settled: list[int] = []
            for impact in impacts:
                elapsed = max(0.0, now - float(impact["timestamp"]))
                progress = min(elapsed / delay_seconds, 1.0) if delay_seconds > 0 else 1.0
                unapplied += int(impact["shares_delta"]) * (1.0 - progress)
                if progress >= 1.0:
                    settled.append(int(impact["id"]))
            mark_impacts_applied(scoped, settled)
        return max(0.0, actual_shares - unapplied)

    def cleanup_old_impacts(self, retention_hours: int | None = None) -> int:
        if retention_hours is None:
            retention_hours = int(
                get_app_config("IMPACT_RETENTION_HOURS", connection_factory=self._connection_factory)
            )
        cutoff = self._clock() - (retention_hours * 3600.0)
        with connection_scope(self._connection_factory) as conn:
            removed = delete_applied_impacts_before(conn, cutoff)
        if removed:
            logger.info("Removed %s settled price impacts", removed)
        return removed

    # Capital gains tax

    def calculate_capital_gains_tax(
        self,
        guild_id: int,
        consumed_lots: Iterable[ConsumedLot],
        sale_price: float,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> CapitalGainsTax:
        settings = self.settings(guild_id, conn=conn)
        return tax_on_lots(settings, consumed_lots, sale_price, self._clock())

    def preview_capital_gains_tax(
        self,
        guild_id: int,
        buyer_id: int,
        stock_user_id: int,
        shares_to_sell: int,
        sale_price: float,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> CapitalGainsTax:
        settings = self.settings(guild_id, conn=conn)
        if not settings.capital_gains_tax_enabled:
            return CapitalGainsTax()
        lots = self.get_purchase_lots(buyer_id, stock_user_id, conn=conn)
        return tax_on_lots(settings, take_fifo(lots, shares_to_sell), sale_price, self._clock())

    # Settings updates

    def update_sell_cooldown(
        self,
        guild_id: int,
        minutes: int | None = None,
        enabled: bool | None = None,
    ) -> MarketSettings:
        return self._settings.update_market(
            guild_id,
            sell_cooldown_minutes=minutes,
            sell_cooldown_enabled=enabled,
        )

    def update_price_impact_delay(
        self,
        guild_id: int,
        minutes: int | None = None,
        enabled: bool | None = None,
    ) -> MarketSettings:
        return self._settings.update_market(
            guild_id,
            price_impact_delay_minutes=minutes,
            price_impact_enabled=enabled,
        )

    def update_capital_gains_tax(
        self,
        guild_id: int,
        short_term_hours: int | None = None,
        short_term_percent: float | None = None,
        long_term_percent: float | None = None,
        enabled: bool | None = None,
    ) -> MarketSettings:
        return self._settings.update_market(
            guild_id,
            short_term_threshold_hours=short_term_hours,
            short_term_tax_percent=short_term_percent,
            long_term_tax_percent=long_term_percent,
            capital_gains_tax_enabled=enabled,
        )
