import os
import sqlite3
import tempfile
import unittest

from chatstock.config.runtime import GuildSettingsProvider
from chatstock.core.days import DayPolicy
from chatstock.db.database import init_db
from chatstock.db.repositories import (
    add_shares,
    add_to_balance,
    create_user,
    get_balance,
    get_holding,
    get_purchase_lots,
    get_user,
)
from chatstock.services.events import MarketEventBoard
from chatstock.services.market import MarketProtection
from chatstock.services.trading import TradingDesk, parse_split_ratio
from chatstock.services.valuation import StockValuation

NOW = 1_700_049_600.0
MINUTE = 60.0
HOUR = 3600.0
GUILD = 1
STOCK = 1
TRADER = 2


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TradingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.factory = lambda: self.conn
        init_db(self.factory)
        self.clock = FakeClock(NOW)
        self.settings = GuildSettingsProvider(self.factory)
        self.market = MarketProtection(self.settings, clock=self.clock, connection_factory=self.factory)
        self.valuation = StockValuation(
            self.settings,
            share_counter=self.market.get_effective_share_count,
            day_policy=DayPolicy(),
            clock=self.clock,
            connection_factory=self.factory,
        )
        self.desk = TradingDesk(
            self.valuation,
            self.market,
            self.settings,
            clock=self.clock,
            connection_factory=self.factory,
        )
        # Fixed prices make the arithmetic below exact.
        self.settings.update_market(GUILD, price_impact_enabled=False)
        create_user(self.conn, STOCK, "alice")
        create_user(self.conn, TRADER, "bob")
        add_to_balance(self.conn, GUILD, TRADER, 10_000.0)

    def tearDown(self) -> None:
        self.conn.close()

    def _held(self) -> int:
        holding = get_holding(self.conn, TRADER, STOCK)
        return 0 if holding is None else int(holding["shares"])

    def _lot_total(self) -> int:
        return sum(int(lot["shares"]) for lot in get_purchase_lots(self.conn, TRADER, STOCK))


class BuySellTests(TradingTestCase):
    def test_buy_records_everything(self) -> None:
        result = self.desk.buy(GUILD, TRADER, STOCK, 10)
        self.assertTrue(result.ok)
        self.assertEqual((result.price, result.gross, result.balance), (100.0, 1000.0, 9000.0))
        self.assertEqual(self._held(), 10)
        self.assertEqual(self._lot_total(), 10)
        impacts = self.conn.execute("SELECT shares_delta FROM pending_impacts").fetchall()
        self.assertEqual([row["shares_delta"] for row in impacts], [10])
        kinds = self.conn.execute("SELECT transaction_type FROM transactions").fetchall()
        self.assertEqual([row["transaction_type"] for row in kinds], ["BUY"])

    def test_buy_rejections(self) -> None:
        self.assertEqual(self.desk.buy(GUILD, TRADER, STOCK, 0).reason, "invalid_shares")
        self.assertEqual(self.desk.buy(GUILD, TRADER, STOCK, 1000).reason, "insufficient_funds")
        stale = self.desk.buy(GUILD, TRADER, STOCK, 1, expected_price=99.0)
        self.assertEqual((stale.reason, stale.price), ("stale_quote", 100.0))
        self.assertEqual(get_balance(self.conn, GUILD, TRADER), 10_000.0)
        self.assertEqual(self._held(), 0)

    def test_sell_waits_for_cooldown(self) -> None:
        self.desk.buy(GUILD, TRADER, STOCK, 10)
        denied = self.desk.sell(GUILD, TRADER, STOCK, 10)
        self.assertEqual((denied.ok, denied.reason, denied.wait_minutes), (False, "cooldown", 60))
        self.assertEqual(self.desk.sell(GUILD, TRADER, STOCK, 11).reason, "insufficient_shares")
        self.assertEqual(self._held(), 10)

    def test_preview_matches_sale(self) -> None:
        self.desk.buy(GUILD, TRADER, STOCK, 10)
        self.clock.advance(61 * MINUTE)

        preview = self.desk.preview_sell(GUILD, TRADER, STOCK, 10)
        self.assertEqual((preview.price, preview.gross, preview.tax, preview.net), (103.0, 1030.0, 8, 1022.0))
        self.assertEqual(self._lot_total(), 10)

        sold = self.desk.sell(GUILD, TRADER, STOCK, 10, expected_price=preview.price)
        self.assertTrue(sold.ok)
        self.assertEqual((sold.tax, sold.net), (preview.tax, preview.net))
        self.assertEqual(sold.balance, 10_022.0)
        self.assertIsNone(get_holding(self.conn, TRADER, STOCK))
        self.assertEqual(self._lot_total(), 0)
        deltas = self.conn.execute("SELECT shares_delta FROM pending_impacts ORDER BY id").fetchall()
        self.assertEqual([row["shares_delta"] for row in deltas], [10, -10])

    def test_untracked_shares_sell_first(self) -> None:
        add_shares(self.conn, TRADER, STOCK, 5, 80.0)
        sold = self.desk.sell(GUILD, TRADER, STOCK, 5)
        self.assertTrue(sold.ok)
        self.assertEqual(sold.tax, 0)

        add_shares(self.conn, TRADER, STOCK, 5, 80.0)
        self.desk.buy(GUILD, TRADER, STOCK, 10)
        self.clock.advance(61 * MINUTE)
        self.assertTrue(self.desk.sell(GUILD, TRADER, STOCK, 8).ok)
        self.assertEqual(self._held(), 7)
        self.assertEqual(self._lot_total(), 7)


class SplitTests(TradingTestCase):
    def test_parse_ratio(self) -> None:
        self.assertEqual(parse_split_ratio("2:1"), (2, 1))
        self.assertEqual(parse_split_ratio(" 1 : 4 "), (1, 4))
        for bad in ("3:2", "1:1", "abc", "0:1", "2"):
            self.assertIsNone(parse_split_ratio(bad))
        self.assertEqual(self.desk.split(GUILD, STOCK, "3:2").reason, "invalid_ratio")

    def test_forward_split(self) -> None:
        self.desk.buy(GUILD, TRADER, STOCK, 10)
        self.assertEqual(self.desk.split(GUILD, STOCK, "2:1").reason, "price_too_low")

        self.settings.update_splits(GUILD, split_min_price=10)
        result = self.desk.split(GUILD, STOCK, "2:1")
        self.assertTrue(result.ok)
        self.assertEqual((result.price_before, result.price_after), (103.0, 51.5))
        holding = get_holding(self.conn, TRADER, STOCK)
        self.assertEqual(holding["shares"], 20)
        self.assertAlmostEqual(holding["avg_buy_price"], 50.0)
        lots = get_purchase_lots(self.conn, TRADER, STOCK)
        self.assertEqual([(lot["shares"], lot["price"]) for lot in lots], [(20, 50.0)])
        self.assertAlmostEqual(get_user(self.conn, STOCK)["price_modifier"], 0.5)

        again = self.desk.split(GUILD, STOCK, "2:1")
        self.assertEqual((again.reason, again.wait_hours), ("split_cooldown", 168))

    def test_reverse_split_keeps_lots_in_step(self) -> None:
        self.desk.buy(GUILD, TRADER, STOCK, 3)
        self.clock.advance(MINUTE)
        self.desk.buy(GUILD, TRADER, STOCK, 3)
        self.assertEqual(self.desk.split(GUILD, STOCK, "1:2").reason, "price_too_high")

        self.settings.update_splits(GUILD, reverse_split_max_price=200)
        result = self.desk.split(GUILD, STOCK, "1:2")
        self.assertTrue(result.ok)
        self.assertEqual(self._held(), 3)
        self.assertEqual([lot["shares"] for lot in get_purchase_lots(self.conn, TRADER, STOCK)], [1, 2])
        self.assertAlmostEqual(get_user(self.conn, STOCK)["price_modifier"], 2.0)

    def test_reverse_split_can_wipe_small_holdings(self) -> None:
        self.desk.buy(GUILD, TRADER, STOCK, 1)
        self.settings.update_splits(GUILD, reverse_split_max_price=200)
        self.assertTrue(self.desk.split(GUILD, STOCK, "1:3").ok)
        self.assertIsNone(get_holding(self.conn, TRADER, STOCK))
        self.assertEqual(self._lot_total(), 0)

    def test_disabled_splits(self) -> None:
        self.settings.update_splits(GUILD, reverse_split_max_price=0)
        self.assertEqual(self.desk.split(GUILD, STOCK, "1:2").reason, "splits_disabled")
        self.settings.update_splits(GUILD, splits_enabled=False)
        self.assertEqual(self.desk.split(GUILD, STOCK, "2:1").reason, "splits_disabled")


class FileBackedTradingTests(unittest.TestCase):
    """Each factory call opens its own connection, as get_connection does."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._path = os.path.join(self._tmp.name, "chatstock.db")
        self._opened: list[sqlite3.Connection] = []
        init_db(self.factory)
        self.clock = FakeClock(NOW)
        self.settings = GuildSettingsProvider(self.factory)
        self.market = MarketProtection(self.settings, clock=self.clock, connection_factory=self.factory)
        self.events = MarketEventBoard(clock=self.clock, connection_factory=self.factory)
        self.valuation = StockValuation(
            self.settings,
            share_counter=self.market.get_effective_share_count,
            event_multiplier=self.events.get_multiplier,
            day_policy=DayPolicy(),
            clock=self.clock,
            connection_factory=self.factory,
        )
        self.desk = TradingDesk(
            self.valuation,
            self.market,
            self.settings,
            clock=self.clock,
            connection_factory=self.factory,
        )
        with self.factory() as conn:
            create_user(conn, STOCK, "alice")
            create_user(conn, TRADER, "bob")
            add_to_balance(conn, GUILD, TRADER, 10_000.0)

    def tearDown(self) -> None:
        for conn in self._opened:
            conn.close()
        self._tmp.cleanup()

    def factory(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=0.2)
        conn.row_factory = sqlite3.Row
        self._opened.append(conn)
        return conn

    def _stored_events(self) -> int:
        with self.factory() as conn:
            return conn.execute("SELECT COUNT(*) FROM active_market_events").fetchone()[0]

    def test_buy_after_event_expiry_does_not_lock(self) -> None:
        self.events.start_event(GUILD, 20, 30)
        self.clock.advance(45 * MINUTE)

        result = self.desk.buy(GUILD, TRADER, STOCK, 1)
        self.assertTrue(result.ok)
        self.assertEqual(result.price, 100.0)
        self.assertEqual(self._stored_events(), 1)

        self.assertEqual(len(self.events.expire_due()), 1)
        self.assertEqual(self._stored_events(), 0)

    def test_sell_after_event_expiry_does_not_lock(self) -> None:
        self.settings.update_market(GUILD, sell_cooldown_enabled=False)
        self.assertTrue(self.desk.buy(GUILD, TRADER, STOCK, 2).ok)
        self.events.start_event(GUILD, -50, 10)
        self.clock.advance(20 * MINUTE)

        result = self.desk.sell(GUILD, TRADER, STOCK, 1)
        self.assertTrue(result.ok)
        self.assertEqual(result.shares, 1)


if __name__ == "__main__":
    unittest.main()
