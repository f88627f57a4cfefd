import sqlite3
import unittest

from chatstock.config.runtime import (
    GuildSettingsProvider,
    ensure_app_config_defaults,
    get_all_app_configs,
    get_app_config,
    set_app_config,
)
from chatstock.db.database import init_db
from chatstock.db.repositories import get_state_value, set_state_value


class RuntimeConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.factory = lambda: self.conn
        init_db(self.factory)

    def tearDown(self) -> None:
        self.conn.close()

    def _guild_rows(self, guild_id: int) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM app_state WHERE key LIKE ?",
            (f"guild_config:{guild_id}:%",),
        ).fetchone()[0]

    def test_defaults_and_normalisation(self) -> None:
        self.assertEqual(get_app_config("PRICE_LOG_EVERY", connection_factory=self.factory), 10)
        ensure_app_config_defaults(self.factory)
        self.assertEqual(get_state_value(self.conn, "config:DAY_TIMEZONE"), "America/New_York")

        self.assertEqual(set_app_config("PRICE_LOG_EVERY", 0, connection_factory=self.factory), 1)
        self.assertEqual(get_app_config("PRICE_LOG_EVERY", connection_factory=self.factory), 1)

        set_state_value(self.conn, "config:IMPACT_RETENTION_HOURS", "not a number")
        self.assertEqual(get_app_config("IMPACT_RETENTION_HOURS", connection_factory=self.factory), 24)

        names = [row["name"] for row in get_all_app_configs(self.factory)]
        self.assertIn("BASE_VALUE_PER_MESSAGE", names)
        with self.assertRaises(KeyError):
            get_app_config("NOPE", connection_factory=self.factory)

    def test_guild_defaults_written_lazily(self) -> None:
        provider = GuildSettingsProvider(self.factory)
        self.assertEqual(provider.market(None).sell_cooldown_minutes, 60)
        self.assertEqual(self._guild_rows(1), 0)

        settings = provider.market(1)
        self.assertTrue(settings.capital_gains_tax_enabled)
        self.assertEqual(self._guild_rows(1), 8)

    def test_updates_persist_and_normalise(self) -> None:
        provider = GuildSettingsProvider(self.factory)
        updated = provider.update_market(
            1,
            sell_cooldown_minutes=15,
            short_term_tax_percent=150,
            price_impact_enabled="off",
            long_term_tax_percent=None,
        )
        self.assertEqual(updated.sell_cooldown_minutes, 15)
        self.assertEqual(updated.short_term_tax_percent, 100.0)
        self.assertFalse(updated.price_impact_enabled)
        self.assertEqual(updated.long_term_tax_percent, 0.0)

        fresh = GuildSettingsProvider(self.factory).market(1)
        self.assertEqual(fresh, updated)

        with self.assertRaises(KeyError):
            provider.update_market(1, not_a_setting=1)

    def test_tier_thresholds_stay_ordered(self) -> None:
        provider = GuildSettingsProvider(self.factory)
        tiers = provider.update_activity_tiers(1, tier1_threshold=60)
        self.assertEqual((tiers.tier1_threshold, tiers.tier2_threshold, tiers.tier3_threshold), (60, 60, 100))

    def test_cache_and_invalidate(self) -> None:
        provider = GuildSettingsProvider(self.factory)
        provider.update_splits(1, split_cooldown_hours=12)
        set_state_value(self.conn, "guild_config:1:split_cooldown_hours", "48")
        self.assertEqual(provider.splits(1).split_cooldown_hours, 12)
        provider.invalidate(1)
        self.assertEqual(provider.splits(1).split_cooldown_hours, 48)


if __name__ == "__main__":
    unittest.main()
