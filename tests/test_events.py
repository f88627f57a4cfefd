import sqlite3
import unittest

from chatstock.db.database import init_db
from chatstock.services.events import MarketEventBoard

NOW = 1_700_049_600.0


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MarketEventBoardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.factory = lambda: self.conn
        init_db(self.factory)
        self.clock = FakeClock(NOW)
        self.board = MarketEventBoard(clock=self.clock, connection_factory=self.factory)

    def tearDown(self) -> None:
        self.conn.close()

    def _stored(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM active_market_events").fetchone()[0]

    def test_event_lifecycle(self) -> None:
        self.assertEqual(self.board.get_multiplier(1), 1.0)
        event = self.board.start_event(1, 20, 30, "Bull Run")
        self.assertAlmostEqual(event.multiplier, 1.2)
        self.assertAlmostEqual(self.board.get_multiplier(1), 1.2)
        self.assertEqual(self.board.get_multiplier(2), 1.0)
        self.assertEqual(self.board.get_active_event(1)["remaining_minutes"], 30)

        self.clock.advance(10 * 60 + 30)
        self.assertEqual(self.board.get_active_event(1)["remaining_minutes"], 20)

        self.clock.advance(20 * 60)
        self.assertEqual(self.board.get_multiplier(1), 1.0)
        self.assertIsNone(self.board.get_active_event(1))
        # Reads leave the stored row for the sweep.
        self.assertEqual(self._stored(), 1)
        self.assertEqual([event.guild_id for event in self.board.expire_due()], [1])
        self.assertEqual(self._stored(), 0)

    def test_zero_change_starts_nothing(self) -> None:
        self.assertIsNone(self.board.start_event(1, 0))
        self.assertEqual(self._stored(), 0)

    def test_restore_keeps_only_live_events(self) -> None:
        self.board.start_event(1, -10, 60)
        self.board.start_event(2, 15, 5)
        self.clock.advance(10 * 60)

        restored = MarketEventBoard(clock=self.clock, connection_factory=self.factory)
        self.assertEqual(restored.restore(), 1)
        self.assertAlmostEqual(restored.get_multiplier(1), 0.9)
        self.assertEqual(restored.get_multiplier(2), 1.0)
        self.assertEqual(self._stored(), 1)

    def test_expire_due_and_end(self) -> None:
        self.board.start_event(1, 5, 1)
        self.board.start_event(2, 5, 60)
        self.clock.advance(120)
        expired = self.board.expire_due()
        self.assertEqual([event.guild_id for event in expired], [1])
        self.assertIsNotNone(self.board.end_event(2))
        self.assertEqual(self._stored(), 0)


if __name__ == "__main__":
    unittest.main()
