from __future__ import annotations

import sqlite3
import time
from collections import Counter
from typing import Iterable

from chatstock.config.runtime import ActivityTierSettings, get_app_config
from chatstock.config.settings import LEGACY_ACTIVITY_CAP, LEGACY_RATE_PER_MESSAGE
from chatstock.core.days import DayPolicy
from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import (
    add_activity_event,
    count_activity_since,
    create_user,
    get_activity_timestamps,
    get_user,
    increment_user_activity,
)

DAY_SECONDS = 86400.0


def record_activity(
    user_id: int,
    username: str,
    timestamp: float | None = None,
    *,
    base_value_increment: float | None = None,
    connection_factory: ConnectionFactory = get_connection,
) -> dict:
    """Count one activity event for ``user_id`` and return the updated user row."""
    ts = float(timestamp) if timestamp is not None else time.time()
    if base_value_increment is None:
        base_value_increment = float(
            get_app_config("BASE_VALUE_PER_MESSAGE", connection_factory=connection_factory)
        )
    with connection_scope(connection_factory) as conn:
        create_user(conn, user_id, username)
        increment_user_activity(conn, user_id, ts, base_value_increment)
        add_activity_event(conn, user_id, ts)
        return get_user(conn, user_id)


def daily_contribution(message_count: int, tiers: ActivityTierSettings) -> float:
    """Percent contribution of one day's messages under the marginal tier schedule."""
    remaining = max(0, int(message_count))
    bands = (
        (tiers.tier1_threshold, tiers.tier1_rate),
        (tiers.tier2_threshold - tiers.tier1_threshold, tiers.tier2_rate),
        (tiers.tier3_threshold - tiers.tier2_threshold, tiers.tier3_rate),
    )
    contribution = 0.0
    for width, rate in bands:
        if remaining <= 0:
            break
        taken = min(remaining, max(0, width))
        contribution += taken * rate
        remaining -= taken
    # Tier 4 is deliberately uncapped.
    if remaining > 0:
        contribution += remaining * tiers.tier4_rate
    return contribution


def legacy_activity_multiplier(message_count: int) -> float:
    return 1.0 + min(max(0, int(message_count)) * LEGACY_RATE_PER_MESSAGE, LEGACY_ACTIVITY_CAP)


def messages_per_day(timestamps: Iterable[float], day_policy: DayPolicy) -> Counter:
    return Counter(day_policy.day_of(ts) for ts in timestamps)


def tiered_activity_multiplier(
    timestamps: Iterable[float],
    tiers: ActivityTierSettings,
    day_policy: DayPolicy,
) -> float:
    buckets = messages_per_day(timestamps, day_policy)
    total = sum(daily_contribution(count, tiers) for count in buckets.values())
    return 1.0 + (total / 100.0)


def activity_multiplier(
    conn: sqlite3.Connection,
    user_id: int,
    tiers: ActivityTierSettings,
    day_policy: DayPolicy,
    now: float,
) -> float:
    window_start = now - (tiers.window_days * DAY_SECONDS)
    if tiers.enabled:
        timestamps = get_activity_timestamps(conn, user_id, window_start)
        return tiered_activity_multiplier(timestamps, tiers, day_policy)
    return legacy_activity_multiplier(count_activity_since(conn, user_id, window_start))
