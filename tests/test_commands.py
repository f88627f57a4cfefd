import sqlite3
import unittest

from chatstock.commands.price import build_price_payload
from chatstock.commands.ranking import format_leaderboard
from chatstock.commands.trade import (
    describe_split_failure,
    describe_trade_failure,
    format_buy_quote,
    format_sell_preview,
    format_trade_receipt,
)
from chatstock.config.runtime import GuildSettingsProvider
from chatstock.core.days import DayPolicy
from chatstock.db.database import init_db
from chatstock.db.repositories import create_user, log_price
from chatstock.services.market import TaxLine
from chatstock.services.trading import SplitResult, TradeResult
from chatstock.services.valuation import StockValuation

NOW = 1_700_049_600.0
GUILD = 1


class TradeMessageTests(unittest.TestCase):
    def test_failures_explain_themselves(self) -> None:
        self.assertIn(
            "12 min",
            describe_trade_failure(TradeResult(ok=False, reason="cooldown", shares=3, wait_minutes=12)),
        )
        self.assertIn(
            "$104.50",
            describe_trade_failure(TradeResult(ok=False, reason="stale_quote", price=104.5)),
        )
        self.assertIn(
            "$40.00",
            describe_trade_failure(
                TradeResult(ok=False, reason="insufficient_funds", shares=4, gross=400.0, balance=40.0)
            ),
        )
        self.assertIn("3 h", describe_split_failure(SplitResult(ok=False, reason="split_cooldown", wait_hours=3)))
        self.assertIn("`2:1`", describe_split_failure(SplitResult(ok=False, reason="invalid_ratio")))

    def test_quotes_and_receipts(self) -> None:
        self.assertEqual(
            format_buy_quote("alice", 3, 100.5),
            "Confirm buy of 3 x **alice** @ **$100.50**:\nTotal: **$301.50**",
        )
        preview = TradeResult(
            ok=True,
            shares=2,
            price=150.0,
            gross=300.0,
            tax=25,
            net=275.0,
            tax_breakdown=[
                TaxLine(
                    shares=2,
                    buy_price=100.0,
                    profit=100.0,
                    hold_hours=1,
                    is_short_term=True,
                    tax_rate=25.0,
                    tax=25,
                )
            ],
        )
        text = format_sell_preview("alice", preview)
        self.assertIn("Capital gains tax: -$25 (short-term: $25)", text)
        self.assertTrue(text.endswith("Net: **$275.00**"))

        receipt = format_trade_receipt("sell", "alice", TradeResult(ok=True, shares=2, price=150.0, net=275.0, tax=25, balance=1275.0))
        self.assertEqual(receipt, "Sold 2 x **alice** @ $150.00 for **$275.00** after $25 tax.\nBalance: $1275.00")


class LeaderboardMessageTests(unittest.TestCase):
    def test_medals_then_numbers(self) -> None:
        rows = [
            {"user_id": 2, "username": "bob", "price": 200.6, "total_shares": 1},
            {"user_id": 1, "username": "alice", "price": 100.0, "total_shares": 0},
            {"user_id": 3, "username": "", "price": 50.75, "total_shares": 5},
            {"user_id": 4, "username": "dave", "price": 10.0, "total_shares": 0},
        ]
        lines = format_leaderboard(rows).splitlines()
        self.assertEqual(lines[0], "**🥇** bob: `$200.60` (1 shares out)")
        self.assertTrue(lines[2].startswith("**🥉** User 3"))
        self.assertTrue(lines[3].startswith("**#4** dave"))


class PricePayloadTests(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.factory = lambda: self.conn
        init_db(self.factory)
        self.valuation = StockValuation(
            GuildSettingsProvider(self.factory),
            day_policy=DayPolicy(),
            clock=lambda: NOW,
            connection_factory=self.factory,
        )
        create_user(self.conn, 1, "alice")
        log_price(self.conn, 1, 98.0, NOW - 7200)
        log_price(self.conn, 1, 100.0, NOW - 3600)

    def tearDown(self) -> None:
        self.conn.close()

    def test_payload_for_listed_stock(self) -> None:
        embed, chart, error = build_price_payload(
            self.valuation,
            guild_id=GUILD,
            user_id=1,
            display_name="alice",
            connection_factory=self.factory,
        )
        self.assertIsNone(error)
        self.assertEqual(embed.description, "**$100.00** per share")
        fields = {field.name: field.value for field in embed.fields}
        self.assertEqual(fields["Rank"], "#1 of 1")
        self.assertEqual(fields["Shares outstanding"], "0")
        self.assertEqual(chart.filename, "alice_price_history.png")
        self.assertEqual(embed.image.url, "attachment://alice_price_history.png")

    def test_unknown_member(self) -> None:
        embed, chart, error = build_price_payload(
            self.valuation,
            guild_id=GUILD,
            user_id=99,
            display_name="ghost",
            connection_factory=self.factory,
        )
        self.assertIsNone(embed)
        self.assertIsNone(chart)
        self.assertIn("ghost", error)


if __name__ == "__main__":
    unittest.main()
