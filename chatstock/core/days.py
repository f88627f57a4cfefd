from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayPolicy:
    """Maps epoch timestamps onto calendar days in one fixed timezone."""

    tz: tzinfo = timezone.utc

    @classmethod
    def from_name(cls, name: str) -> "DayPolicy":
        text = str(name).strip()
        if not text or text.upper() == "UTC":
            return cls(timezone.utc)
        try:
            return cls(ZoneInfo(text))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to UTC", text)
            return cls(timezone.utc)

    def day_of(self, timestamp: float) -> date:
        return datetime.fromtimestamp(float(timestamp), tz=self.tz).date()

    def days_back(self, now: float, count: int) -> list[date]:
        today = self.day_of(now)
        return [today - timedelta(days=offset) for offset in range(max(0, int(count)))]
