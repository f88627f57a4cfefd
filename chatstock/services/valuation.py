from __future__ import annotations

import logging
import math
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from chatstock.config.runtime import GuildSettingsProvider, get_app_config
from chatstock.config.settings import (
    DECAY_CAP,
    DECAY_GRACE_DAYS,
    DECAY_PER_DAY,
    DEFAULT_PRICE,
    DEMAND_CAP,
    DEMAND_PER_SHARE,
)
from chatstock.core.days import DayPolicy
from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import get_total_shares, get_user
from chatstock.services.activity import DAY_SECONDS, activity_multiplier
from chatstock.services.money import money
from chatstock.services.streaks import StreakResult, get_streak_info

logger = logging.getLogger(__name__)


class EffectiveShareCounter(Protocol):
    def __call__(
        self,
        guild_id: int,
        stock_user_id: int,
        actual_shares: float,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> float: ...


EventMultiplier = Callable[[int], "float | None"]


@dataclass(frozen=True)
class PriceBreakdown:
    user_id: int
    price: float
    base_value: float
    activity_multiplier: float
    streak: StreakResult
    decay_percent: float
    total_shares: int
    effective_shares: float
    demand_multiplier: float
    price_modifier: float
    event_multiplier: float


def decay_percent_for(last_message_time: float | None, now: float) -> float:
    if not last_message_time:
        return 0.0
    days_since = (now - float(last_message_time)) / DAY_SECONDS
    if days_since <= DECAY_GRACE_DAYS:
        return 0.0
    inactive_days = math.floor(days_since - DECAY_GRACE_DAYS)
    return min(inactive_days * DECAY_PER_DAY, DECAY_CAP)


def demand_multiplier_for(shares: float) -> float:
    if shares <= 0:
        return 1.0
    return 1.0 + min(shares * DEMAND_PER_SHARE, DEMAND_CAP)


class StockValuation:
    """Computes a user's stock price from persisted activity and market state.

    Nothing is cached between calls: every quote is rebuilt from storage and
    the clock. The only write is the streak tier bookkeeping done by
    :func:`chatstock.services.streaks.get_streak_info`.
    """

    def __init__(
        self,
        settings: GuildSettingsProvider,
        *,
        share_counter: EffectiveShareCounter | None = None,
        event_multiplier: EventMultiplier | None = None,
        day_policy: DayPolicy | None = None,
        clock: Callable[[], float] = time.time,
        connection_factory: ConnectionFactory = get_connection,
    ) -> None:
        self._settings = settings
        self._share_counter = share_counter
        self._event_multiplier = event_multiplier
        self._day_policy = day_policy
        self._clock = clock
        self._connection_factory = connection_factory

    @property
    def day_policy(self) -> DayPolicy:
        if self._day_policy is None:
            name = get_app_config("DAY_TIMEZONE", connection_factory=self._connection_factory)
            self._day_policy = DayPolicy.from_name(name)
        return self._day_policy

    def calculate_stock_price(
        self,
        user_id: int,
        guild_id: int | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> float:
        breakdown = self.price_breakdown(user_id, guild_id, conn=conn)
        return DEFAULT_PRICE if breakdown is None else breakdown.price

    def price_breakdown(
        self,
        user_id: int,
        guild_id: int | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> PriceBreakdown | None:
        day_policy = self.day_policy
        now = self._clock()
        with connection_scope(self._connection_factory, conn) as scoped:
            user = get_user(scoped, user_id)
            if user is None:
                return None

            tiers = self._settings.activity_tiers(guild_id, conn=scoped)
            activity = activity_multiplier(scoped, user_id, tiers, day_policy, now)
            streak = get_streak_info(scoped, user_id, day_policy, now)

            price = float(user["base_value"]) * activity * (1.0 + streak.bonus)

            decay = decay_percent_for(user.get("last_message_time"), now)
            price *= 1.0 - decay

            total_shares = get_total_shares(scoped, user_id)
            effective_shares: float = total_shares
            if guild_id is not None and total_shares > 0 and self._share_counter is not None:
                effective_shares = self._share_counter(guild_id, user_id, total_shares, conn=scoped)
            demand = demand_multiplier_for(effective_shares) if total_shares > 0 else 1.0
            price *= demand

        modifier = float(user.get("price_modifier") or 1.0)
        price *= modifier

        event = 1.0
        if guild_id is not None and self._event_multiplier is not None:
            multiplier = self._event_multiplier(guild_id)
            if multiplier is not None:
                event = float(multiplier)
        price *= event

        final = money(price)
        logger.debug(
            "Price for %s: %.2f (activity=%.4f streak=%.2f decay=%.2f demand=%.4f modifier=%.4f event=%.4f)",
            user_id,
            final,
            activity,
            streak.bonus,
            decay,
            demand,
            modifier,
            event,
        )
        return PriceBreakdown(
            user_id=user_id,
            price=final,
            base_value=float(user["base_value"]),
            activity_multiplier=activity,
            streak=streak,
            decay_percent=decay,
            total_shares=total_shares,
            effective_shares=effective_shares,
            demand_multiplier=demand,
            price_modifier=modifier,
            event_multiplier=event,
        )

    def get_streak_info(
        self,
        user_id: int,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> StreakResult:
        day_policy = self.day_policy
        with connection_scope(self._connection_factory, conn) as scoped:
            return get_streak_info(scoped, user_id, day_policy, self._clock())
