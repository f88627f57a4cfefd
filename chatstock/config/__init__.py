from chatstock.config.settings import (
    BASE_VALUE_PER_MESSAGE,
    DAY_TIMEZONE,
    DB_PATH,
    DEFAULT_PRICE,
    IMPACT_RETENTION_HOURS,
    MAINTENANCE_INTERVAL,
    PRICE_LOG_EVERY,
    TOKEN,
)

__all__ = [
    "BASE_VALUE_PER_MESSAGE",
    "DAY_TIMEZONE",
    "DB_PATH",
    "DEFAULT_PRICE",
    "IMPACT_RETENTION_HOURS",
    "MAINTENANCE_INTERVAL",
    "PRICE_LOG_EVERY",
    "TOKEN",
]
