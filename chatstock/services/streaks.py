from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date

from chatstock.config.settings import STREAK_LOOKBACK_DAYS, STREAK_MAX_TIER_DAYS, STREAK_TIERS
from chatstock.core.days import DayPolicy
from chatstock.db.repositories import get_activity_timestamps, get_user, set_streak_state

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400.0
MAX_TIER = STREAK_TIERS[0][1]


@dataclass(frozen=True)
class StreakTransition:
    user_id: int
    tier: int
    tier_reached: float
    expired: bool


@dataclass(frozen=True)
class StreakResult:
    days: int
    tier: int
    bonus: float
    new_tier: bool = False
    expired: bool = False
    transition: StreakTransition | None = None


def streak_tier_for(days: int) -> tuple[int, float]:
    for min_days, tier, bonus in STREAK_TIERS:
        if days >= min_days:
            return tier, bonus
    return 0, 0.0


def count_streak_days(active_days: set[date], day_policy: DayPolicy, now: float) -> int:
    streak = 0
    for offset, day in enumerate(day_policy.days_back(now, STREAK_LOOKBACK_DAYS)):
        if day in active_days:
            streak += 1
        elif offset > 0:
            # Today may still be empty; any earlier gap ends the streak.
            break
    return streak


def compute_streak(user: dict, active_days: set[date], day_policy: DayPolicy, now: float) -> StreakResult:
    """Work out the streak for ``user`` without touching storage.

    The returned ``transition`` is what :func:`apply_streak_transition` must
    persist, or ``None`` when the stored tier state is already current.
    """
    user_id = int(user["user_id"])
    stored_tier = int(user.get("streak_tier") or 0)
    tier_reached = float(user.get("streak_tier_reached") or 0.0)
    already_expired = bool(user.get("streak_expired"))

    days = count_streak_days(active_days, day_policy, now)
    tier, bonus = streak_tier_for(days)

    if already_expired:
        if tier == MAX_TIER:
            return StreakResult(days=days, tier=0, bonus=0.0)
        # The expired run has been broken; start tracking from scratch.
        transition = StreakTransition(user_id, tier, 0.0, False)
        return StreakResult(
            days=days,
            tier=tier,
            bonus=bonus,
            new_tier=tier > stored_tier,
            transition=transition,
        )

    if tier == MAX_TIER and stored_tier == MAX_TIER and tier_reached > 0:
        if now - tier_reached > STREAK_MAX_TIER_DAYS * DAY_SECONDS:
            return StreakResult(
                days=days,
                tier=0,
                bonus=0.0,
                expired=True,
                transition=StreakTransition(user_id, 0, 0.0, True),
            )

    if tier > stored_tier:
        reached = now if tier == MAX_TIER else 0.0
        return StreakResult(
            days=days,
            tier=tier,
            bonus=bonus,
            new_tier=True,
            transition=StreakTransition(user_id, tier, reached, False),
        )
    if tier < stored_tier:
        return StreakResult(
            days=days,
            tier=tier,
            bonus=bonus,
            transition=StreakTransition(user_id, tier, 0.0, False),
        )
    return StreakResult(days=days, tier=tier, bonus=bonus)


def apply_streak_transition(conn: sqlite3.Connection, transition: StreakTransition | None) -> None:
    if transition is None:
        return
    set_streak_state(
        conn,
        transition.user_id,
        transition.tier,
        transition.tier_reached,
        transition.expired,
    )
    logger.info(
        "Streak tier for user %s is now %s%s",
        transition.user_id,
        transition.tier,
        " (expired)" if transition.expired else "",
    )


def active_days_for(conn: sqlite3.Connection, user_id: int, day_policy: DayPolicy, now: float) -> set[date]:
    since = now - (STREAK_LOOKBACK_DAYS * DAY_SECONDS)
    return {day_policy.day_of(ts) for ts in get_activity_timestamps(conn, user_id, since)}


def get_streak_info(conn: sqlite3.Connection, user_id: int, day_policy: DayPolicy, now: float) -> StreakResult:
    """Compute the streak and persist any tier transition it implies."""
    user = get_user(conn, user_id)
    if user is None:
        return StreakResult(days=0, tier=0, bonus=0.0)
    result = compute_streak(user, active_days_for(conn, user_id, day_policy, now), day_policy, now)
    apply_streak_transition(conn, result.transition)
    return result
