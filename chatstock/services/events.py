from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import delete_market_event, get_market_events, upsert_market_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketEvent:
    guild_id: int
    multiplier: float
    percent_change: float
    expires_at: float
    event_name: str


class MarketEventBoard:
    """Holds at most one active price event per guild.

    Events live in memory for fast lookups and are mirrored into
    ``active_market_events`` so a restart can restore them.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        connection_factory: ConnectionFactory = get_connection,
    ) -> None:
        self._clock = clock
        self._connection_factory = connection_factory
        self._events: dict[int, MarketEvent] = {}

    def start_event(
        self,
        guild_id: int,
        percent_change: float,
        duration_minutes: float = 30,
        event_name: str = "Market Event",
    ) -> MarketEvent | None:
        if percent_change == 0:
            return None
        event = MarketEvent(
            guild_id=guild_id,
            multiplier=1.0 + (float(percent_change) / 100.0),
            percent_change=float(percent_change),
            expires_at=self._clock() + (float(duration_minutes) * 60.0),
            event_name=event_name,
        )
        self._events[guild_id] = event
        with connection_scope(self._connection_factory) as conn:
            upsert_market_event(
                conn,
                guild_id,
                event.multiplier,
                event.percent_change,
                event.expires_at,
                event.event_name,
            )
        logger.info(
            "Market event %r started in guild %s (%+.1f%% for %s min)",
            event_name,
            guild_id,
            event.percent_change,
            duration_minutes,
        )
        return event

    def end_event(self, guild_id: int) -> MarketEvent | None:
        event = self._events.pop(guild_id, None)
        with connection_scope(self._connection_factory) as conn:
            delete_market_event(conn, guild_id)
        if event is not None:
            logger.info("Market event %r ended in guild %s", event.event_name, guild_id)
        return event

    def get_multiplier(self, guild_id: int) -> float:
        event = self._current(guild_id)
        return 1.0 if event is None else event.multiplier

    def get_active_event(self, guild_id: int) -> dict | None:
        event = self._current(guild_id)
        if event is None:
            return None
        return {
            "name": event.event_name,
            "multiplier": event.multiplier,
            "percent_change": event.percent_change,
            "expires_at": event.expires_at,
            "remaining_minutes": math.ceil((event.expires_at - self._clock()) / 60.0),
        }

    def expire_due(self) -> list[MarketEvent]:
        now = self._clock()
        due = [event for event in self._events.values() if now > event.expires_at]
        for event in due:
            self.end_event(event.guild_id)
        return due

    def restore(self) -> int:
        now = self._clock()
        restored = 0
        with connection_scope(self._connection_factory) as conn:
            for row in get_market_events(conn):
                event = MarketEvent(
                    guild_id=int(row["guild_id"]),
                    multiplier=float(row["multiplier"]),
                    percent_change=float(row["percent_change"]),
                    expires_at=float(row["expires_at"]),
                    event_name=str(row["event_name"]),
                )
                if event.expires_at > now:
                    self._events[event.guild_id] = event
                    restored += 1
                else:
                    delete_market_event(conn, event.guild_id)
        logger.info("Restored %s active market events", restored)
        return restored

    def _current(self, guild_id: int) -> MarketEvent | None:
        # Never writes. Expired events are dropped by expire_due and restore.
        event = self._events.get(guild_id)
        if event is None or self._clock() > event.expires_at:
            return None
        return event
