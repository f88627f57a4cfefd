from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, fields, replace
from typing import Any, Callable

from chatstock.config.settings import (
    BASE_VALUE_PER_MESSAGE,
    DAY_TIMEZONE,
    IMPACT_RETENTION_HOURS,
    MAINTENANCE_INTERVAL,
    PRICE_LOG_EVERY,
)
from chatstock.db.database import ConnectionFactory, connection_scope, get_connection
from chatstock.db.repositories import get_state_value, insert_state_default, set_state_value

logger = logging.getLogger(__name__)


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfigSpec:
    default: Any
    cast: Callable[[str], Any]
    description: str


APP_CONFIG_SPECS: dict[str, AppConfigSpec] = {
    "DAY_TIMEZONE": AppConfigSpec(
        default=str(DAY_TIMEZONE),
        cast=str,
        description="Timezone whose calendar dates define activity days and streaks.",
    ),
    "BASE_VALUE_PER_MESSAGE": AppConfigSpec(
        default=float(BASE_VALUE_PER_MESSAGE),
        cast=float,
        description="Permanent base value added per counted message.",
    ),
    "PRICE_LOG_EVERY": AppConfigSpec(
        default=int(PRICE_LOG_EVERY),
        cast=int,
        description="Log a price history point every N counted messages.",
    ),
    "IMPACT_RETENTION_HOURS": AppConfigSpec(
        default=int(IMPACT_RETENTION_HOURS),
        cast=int,
        description="Hours to keep fully applied price impacts before cleanup.",
    ),
    "MAINTENANCE_INTERVAL": AppConfigSpec(
        default=int(MAINTENANCE_INTERVAL),
        cast=int,
        description="Seconds between maintenance passes.",
    ),
}


def _state_key(name: str) -> str:
    return f"config:{name}"


def _normalize(name: str, value: Any) -> Any:
    if name == "DAY_TIMEZONE":
        text = str(value).strip()
        return text or str(DAY_TIMEZONE)
    if name == "BASE_VALUE_PER_MESSAGE":
        return max(0.0, float(value))
    if name == "PRICE_LOG_EVERY":
        return max(1, int(value))
    if name == "IMPACT_RETENTION_HOURS":
        return max(0, int(value))
    if name == "MAINTENANCE_INTERVAL":
        return max(1, int(value))
    return value


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return f"{value:.12g}"
    return str(value)


def _parse(spec: AppConfigSpec, raw: str | None) -> Any:
    if raw is None:
        return spec.default
    try:
        return spec.cast(raw)
    except (TypeError, ValueError):
        return spec.default


def ensure_app_config_defaults(connection_factory: ConnectionFactory = get_connection) -> None:
    with connection_scope(connection_factory) as conn:
        for name, spec in APP_CONFIG_SPECS.items():
            insert_state_default(conn, _state_key(name), _to_string(_normalize(name, spec.default)))


def get_app_config(name: str, *, connection_factory: ConnectionFactory = get_connection) -> Any:
    spec = APP_CONFIG_SPECS.get(name)
    if spec is None:
        raise KeyError(f"Unknown app config: {name}")
    with connection_scope(connection_factory) as conn:
        raw = get_state_value(conn, _state_key(name))
    return _normalize(name, _parse(spec, raw))


def set_app_config(
    name: str,
    value: Any,
    *,
    connection_factory: ConnectionFactory = get_connection,
) -> Any:
    spec = APP_CONFIG_SPECS.get(name)
    if spec is None:
        raise KeyError(f"Unknown app config: {name}")
    normalized = _normalize(name, value)
    with connection_scope(connection_factory) as conn:
        set_state_value(conn, _state_key(name), _to_string(normalized))
    return normalized


def get_all_app_configs(connection_factory: ConnectionFactory = get_connection) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name, spec in APP_CONFIG_SPECS.items():
        rows.append(
            {
                "name": name,
                "value": get_app_config(name, connection_factory=connection_factory),
                "default": _normalize(name, spec.default),
                "type": spec.cast.__name__,
                "description": spec.description,
            }
        )
    return rows


# Per-guild settings

@dataclass(frozen=True)
class ActivityTierSettings:
    enabled: bool = True
    tier1_threshold: int = 20
    tier1_rate: float = 0.5
    tier2_threshold: int = 50
    tier2_rate: float = 0.25
    tier3_threshold: int = 100
    tier3_rate: float = 0.15
    tier4_rate: float = 0.05
    window_days: int = 15


@dataclass(frozen=True)
class MarketSettings:
    sell_cooldown_minutes: int = 60
    sell_cooldown_enabled: bool = True
    price_impact_delay_minutes: int = 120
    price_impact_enabled: bool = True
    short_term_threshold_hours: int = 24
    short_term_tax_percent: float = 25.0
    long_term_tax_percent: float = 0.0
    capital_gains_tax_enabled: bool = True


@dataclass(frozen=True)
class SplitSettings:
    splits_enabled: bool = True
    split_min_price: float = 5000.0
    reverse_split_max_price: float = 50.0
    split_cooldown_hours: int = 168


def _specs_for(settings_type: type) -> dict[str, AppConfigSpec]:
    casts = {bool: _to_bool, int: int, float: float, "bool": _to_bool, "int": int, "float": float}
    default = settings_type()
    return {
        field.name: AppConfigSpec(
            default=getattr(default, field.name),
            cast=casts[field.type],
            description=f"{settings_type.__name__}.{field.name}",
        )
        for field in fields(settings_type)
    }


GUILD_SETTING_GROUPS: dict[str, tuple[type, dict[str, AppConfigSpec]]] = {
    "activity": (ActivityTierSettings, _specs_for(ActivityTierSettings)),
    "market": (MarketSettings, _specs_for(MarketSettings)),
    "splits": (SplitSettings, _specs_for(SplitSettings)),
}


def _guild_key(guild_id: int, name: str) -> str:
    return f"guild_config:{guild_id}:{name}"


def _normalize_guild_value(name: str, value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if name.endswith("_rate") or name.endswith("_percent") or name.endswith("_price"):
        value = max(0.0, float(value))
        return min(100.0, value) if name.endswith("_percent") else value
    if name == "window_days":
        return max(1, int(value))
    if name.endswith("_threshold") or name.endswith("_minutes") or name.endswith("_hours"):
        return max(0, int(value))
    return value


def _normalize_group(settings: Any) -> Any:
    if isinstance(settings, ActivityTierSettings):
        # Tier bands must not overlap.
        tier2 = max(settings.tier1_threshold, settings.tier2_threshold)
        tier3 = max(tier2, settings.tier3_threshold)
        return replace(settings, tier2_threshold=tier2, tier3_threshold=tier3)
    return settings


class GuildSettingsProvider:
    """Per-guild settings backed by ``app_state`` with an explicit cache.

    Defaults are written the first time a guild's group is read. Updates
    rewrite both storage and the cached snapshot; ``invalidate`` drops cached
    snapshots so the next read goes back to storage.
    """

    def __init__(self, connection_factory: ConnectionFactory = get_connection) -> None:
        self._connection_factory = connection_factory
        self._cache: dict[tuple[str, int], Any] = {}

    def activity_tiers(
        self,
        guild_id: int | None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> ActivityTierSettings:
        return self._get("activity", guild_id, conn)

    def market(
        self,
        guild_id: int | None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> MarketSettings:
        return self._get("market", guild_id, conn)

    def splits(
        self,
        guild_id: int | None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> SplitSettings:
        return self._get("splits", guild_id, conn)

    def update_activity_tiers(self, guild_id: int, **changes: Any) -> ActivityTierSettings:
        return self._update("activity", guild_id, changes)

    def update_market(self, guild_id: int, **changes: Any) -> MarketSettings:
        return self._update("market", guild_id, changes)

    def update_splits(self, guild_id: int, **changes: Any) -> SplitSettings:
        return self._update("splits", guild_id, changes)

    def invalidate(self, guild_id: int | None = None) -> None:
        if guild_id is None:
            self._cache.clear()
            return
        for key in [key for key in self._cache if key[1] == guild_id]:
            del self._cache[key]

    def _get(self, group: str, guild_id: int | None, conn: sqlite3.Connection | None = None) -> Any:
        settings_type, _specs = GUILD_SETTING_GROUPS[group]
        if guild_id is None:
            return settings_type()
        cached = self._cache.get((group, guild_id))
        if cached is not None:
            return cached
        settings = self._load(group, guild_id, conn)
        self._cache[(group, guild_id)] = settings
        return settings

    def _load(self, group: str, guild_id: int, conn: sqlite3.Connection | None = None) -> Any:
        settings_type, specs = GUILD_SETTING_GROUPS[group]
        values: dict[str, Any] = {}
        with connection_scope(self._connection_factory, conn) as scoped:
            for name, spec in specs.items():
                key = _guild_key(guild_id, name)
                insert_state_default(scoped, key, _to_string(spec.default))
                parsed = _parse(spec, get_state_value(scoped, key))
                values[name] = _normalize_guild_value(name, parsed)
        logger.debug("Loaded %s settings for guild %s", group, guild_id)
        return _normalize_group(settings_type(**values))

    def _update(self, group: str, guild_id: int, changes: dict[str, Any]) -> Any:
        settings_type, specs = GUILD_SETTING_GROUPS[group]
        unknown = [name for name in changes if name not in specs]
        if unknown:
            raise KeyError(f"Unknown {group} setting: {', '.join(sorted(unknown))}")
        current = self._get(group, guild_id)
        normalized: dict[str, Any] = {}
        for name, value in changes.items():
            if value is None:
                continue
            cast = specs[name].cast
            if isinstance(value, str) or cast is _to_bool:
                value = cast(value)
            normalized[name] = _normalize_guild_value(name, value)
        updated = _normalize_group(replace(current, **normalized))
        with connection_scope(self._connection_factory) as conn:
            for field in fields(settings_type):
                set_state_value(
                    conn,
                    _guild_key(guild_id, field.name),
                    _to_string(getattr(updated, field.name)),
                )
        self._cache[(group, guild_id)] = updated
        logger.info("Updated %s settings for guild %s: %s", group, guild_id, normalized)
        return updated
