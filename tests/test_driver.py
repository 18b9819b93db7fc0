"""
Round driver: phase progression, crash settlement, self-healing and sweep.
"""

import unittest
from decimal import Decimal

from sqlalchemy import func, select, update

from naya_crash import ledger
from naya_crash.db import Bet, LiveBet, Round
from naya_crash.engine import BetStatus, RoundPhase, RoundStatus
from naya_crash.feed import DatabaseLiveBetSink, RoundFeed
from naya_crash.utils import verify_crash_commitment
from tests.support import DatabaseTestCase


class FailingSink(DatabaseLiveBetSink):
    """Stages its rows like the real sink, then fails before the commit."""

    async def publish(self, session, rnd, bets):
        await super().publish(session, rnd, bets)
        raise RuntimeError("lobby feed unavailable")


def drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestRoundLifecycle(DatabaseTestCase):

    async def active_rounds(self):
        async with self.Session() as session:
            result = await session.scalars(
                select(Round).where(Round.status == RoundStatus.ACTIVE)
            )
            return list(result.all())

    async def test_creates_round_when_none_active(self):
        rnd = await self.driver.ensure_round()

        self.assertEqual(rnd.phase, RoundPhase.BETTING)
        self.assertEqual(rnd.status, RoundStatus.ACTIVE)
        self.assertEqual(rnd.countdown_seconds, 3)
        self.assertEqual(rnd.multiplier, Decimal("1.00"))
        self.assertFalse(rnd.bets_locked)
        self.assertIsNone(rnd.play_started_at)
        self.assertEqual(rnd.total_bets, 0)

        again = await self.driver.ensure_round()
        self.assertEqual(again.id, rnd.id)

    async def test_countdown_then_flight(self):
        queue = self.feed.subscribe()
        rnd = await self.open_round()

        self.clock.advance(1)
        self.assertEqual(await self.driver.tick(), 1.0)
        self.assertEqual((await self.load_round(rnd.id)).countdown_seconds, 2)

        self.clock.advance(1)
        await self.driver.tick()
        self.clock.advance(1)
        self.assertEqual(await self.driver.tick(), 0.05)

        flying = await self.load_round(rnd.id)
        self.assertEqual(flying.phase, RoundPhase.PLAYING)
        self.assertTrue(flying.bets_locked)
        self.assertEqual(flying.play_started_at, self.clock.now)
        self.assertEqual(flying.countdown_seconds, 0)

        events = drain(queue)
        self.assertEqual([e["phase"] for e in events], ["betting", "betting", "betting", "playing"])
        self.assertEqual([e["countdown_seconds"] for e in events[:3]], [3, 2, 1])
        self.assertTrue(all(e["crash_point"] is None for e in events))

    async def test_multiplier_updates_while_playing(self):
        rnd = await self.open_round()
        await self.start_flight()
        queue = self.feed.subscribe()

        self.clock.advance(5)
        await self.driver.tick()

        self.assertEqual((await self.load_round(rnd.id)).multiplier, Decimal("1.70"))
        events = drain(queue)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["multiplier"], 1.7)
        self.assertIsNone(events[0]["crash_point"])

    async def test_crash_uses_crash_point_not_overshoot(self):
        await self.add_player("alice")
        rnd = await self.open_round()
        async with self.Session() as session:
            bet = await ledger.place_bet(session, rnd.id, "alice", "Alice", Decimal("10"), now=self.clock())
        await self.start_flight()
        queue = self.feed.subscribe()

        self.clock.advance(20)  # curve is at 3.80 by now
        self.assertEqual(await self.driver.tick(), 3.0)

        crashed = await self.load_round(rnd.id)
        self.assertEqual(crashed.phase, RoundPhase.CRASHED)
        self.assertEqual(crashed.status, RoundStatus.FINISHED)
        self.assertEqual(crashed.final_multiplier, Decimal("2.50"))
        self.assertEqual(crashed.ended_at, self.clock.now)

        # Implicit loss: nothing written to the bet, stake stays debited
        async with self.Session() as session:
            lost = await session.get(Bet, bet.id)
        self.assertEqual(lost.status, BetStatus.PLAYING)
        self.assertIsNone(lost.payout)
        self.assertEqual(await self.balance_of("alice"), Decimal("90.00"))

        [event] = drain(queue)
        self.assertEqual(event["phase"], "crashed")
        self.assertEqual(event["crash_point"], 2.5)
        self.assertTrue(verify_crash_commitment(event["seed"], event["crash_point"], event["crash_hash"]))

    async def test_next_round_after_crash(self):
        await self.add_player("alice")
        first = await self.open_round()
        async with self.Session() as session:
            await ledger.place_bet(session, first.id, "alice", "Alice", Decimal("10"), now=self.clock())
        await self.start_flight()
        self.clock.advance(11)
        await self.driver.tick()

        self.clock.advance(3)
        self.assertEqual(await self.driver.tick(), 1.0)

        [nxt] = await self.active_rounds()
        self.assertNotEqual(nxt.id, first.id)
        self.assertEqual(nxt.phase, RoundPhase.BETTING)
        self.assertEqual(nxt.total_bets, 0)
        self.assertEqual(nxt.total_amount, Decimal("0.00"))

    async def test_live_bets_published_on_crash(self):
        for player in ("alice", "bob"):
            await self.add_player(player)
        rnd = await self.open_round()
        async with self.Session() as session:
            alice = await ledger.place_bet(session, rnd.id, "alice", "Alice", Decimal("10"), now=self.clock())
        async with self.Session() as session:
            await ledger.place_bet(session, rnd.id, "bob", "Bob", Decimal("4"), now=self.clock())
        await self.start_flight()
        self.clock.advance(5)
        async with self.Session() as session:
            await ledger.cash_out(session, alice.id, requested_multiplier=1.5, now=self.clock())
        self.clock.advance(10)
        await self.driver.tick()

        async with self.Session() as session:
            rows = (await session.scalars(select(LiveBet).order_by(LiveBet.player_id))).all()

        self.assertEqual([(r.player_id, r.status) for r in rows], [("alice", "won"), ("bob", "lost")])
        self.assertEqual(rows[0].payout, Decimal("15.00"))
        self.assertEqual(rows[0].multiplier, Decimal("1.50"))
        self.assertEqual(rows[1].payout, Decimal("-4.00"))
        self.assertEqual(rows[1].multiplier, Decimal("2.50"))

    async def test_sink_failure_does_not_stall_rounds(self):
        self.driver = self.make_driver(sink=FailingSink())
        await self.add_player("alice")
        rnd = await self.open_round()
        async with self.Session() as session:
            await ledger.place_bet(session, rnd.id, "alice", "Alice", Decimal("10"), now=self.clock())
        await self.start_flight()
        self.clock.advance(11)

        with self.assertLogs("naya_crash.driver", level="ERROR") as logs:
            # Crash tick still hands back the pause before the next round
            self.assertEqual(await self.driver.tick(), 3.0)
        self.assertIn(rnd.id, logs.output[-1])

        self.assertEqual((await self.load_round(rnd.id)).status, RoundStatus.FINISHED)
        async with self.Session() as session:
            staged = await session.scalar(select(func.count()).select_from(LiveBet))
        self.assertEqual(staged, 0)

        self.clock.advance(3)
        await self.driver.tick()
        [nxt] = await self.active_rounds()
        self.assertNotEqual(nxt.id, rnd.id)

    async def test_live_bet_sink_leaves_commit_to_caller(self):
        await self.add_player("alice")
        rnd = await self.open_round()
        async with self.Session() as session:
            await ledger.place_bet(session, rnd.id, "alice", "Alice", Decimal("10"), now=self.clock())
        await self.start_flight()
        self.clock.advance(11)
        await self.driver.tick()
        crashed = await self.load_round(rnd.id)

        async with self.Session() as session:
            await DatabaseLiveBetSink().publish(session, crashed, await ledger.round_bets(session, rnd.id))
            await session.rollback()

        async with self.Session() as session:
            rows = (await session.scalars(select(LiveBet))).all()
        # Only the driver's own commit from the crash tick
        self.assertEqual(len(rows), 1)

    async def test_duplicate_active_rounds_are_healed(self):
        older = await self.open_round()
        self.clock.advance(1)
        async with self.Session() as session:
            newer = await self.driver.start_new_round(session)
            # Simulate a second writer resurrecting the old round
            await session.execute(
                update(Round)
                .where(Round.id == older.id)
                .values(status=RoundStatus.ACTIVE, phase=RoundPhase.BETTING)
            )
            await session.commit()
        self.assertEqual(len(await self.active_rounds()), 2)

        with self.assertLogs("naya_crash.driver", level="WARNING"):
            await self.driver.tick()

        [survivor] = await self.active_rounds()
        self.assertEqual(survivor.id, newer.id)
        self.assertEqual((await self.load_round(older.id)).phase, RoundPhase.CRASHED)

    async def test_start_new_round_finalizes_leftovers(self):
        first = await self.open_round()
        async with self.Session() as session:
            second = await self.driver.start_new_round(session)

        [active] = await self.active_rounds()
        self.assertEqual(active.id, second.id)
        leftover = await self.load_round(first.id)
        self.assertEqual(leftover.status, RoundStatus.FINISHED)
        self.assertEqual(leftover.final_multiplier, Decimal("1.00"))


class TestStuckRoundSweep(DatabaseTestCase):

    async def test_sweep_recovers_abandoned_round(self):
        rnd = await self.open_round()
        await self.start_flight()
        self.clock.advance(2)
        await self.driver.tick()  # multiplier 1.28 stored

        # Driver "dies" for six minutes
        self.clock.advance(360)
        with self.assertLogs("naya_crash.driver", level="WARNING"):
            self.assertEqual(await self.driver.sweep_stuck_rounds(), 1)

        swept = await self.load_round(rnd.id)
        self.assertEqual(swept.phase, RoundPhase.CRASHED)
        self.assertEqual(swept.status, RoundStatus.FINISHED)
        self.assertEqual(swept.final_multiplier, Decimal("1.28"))

        await self.driver.tick()
        async with self.Session() as session:
            fresh = await ledger.get_active_round(session)
        self.assertIsNotNone(fresh)
        self.assertNotEqual(fresh.id, rnd.id)
        self.assertEqual(fresh.phase, RoundPhase.BETTING)

    async def test_sweep_is_idempotent(self):
        await self.open_round()
        self.clock.advance(360)
        self.assertEqual(await self.driver.sweep_stuck_rounds(), 1)
        self.assertEqual(await self.driver.sweep_stuck_rounds(), 0)

    async def test_sweep_ignores_healthy_rounds(self):
        rnd = await self.open_round()
        self.clock.advance(60)
        self.assertEqual(await self.driver.sweep_stuck_rounds(), 0)
        self.assertEqual((await self.load_round(rnd.id)).status, RoundStatus.ACTIVE)


class TestDriverLifecycle(DatabaseTestCase):

    async def test_start_and_stop(self):
        await self.driver.start()
        self.assertTrue(self.driver.running)
        await self.driver.start()  # already running, no second task

        async with self.Session() as session:
            count = await session.scalar(select(func.count()).select_from(Round))
        self.assertEqual(count, 1)

        await self.driver.stop()
        self.assertFalse(self.driver.running)

    async def test_snapshot_hides_crash_point(self):
        self.assertIsNone(await self.driver.snapshot())
        rnd = await self.open_round()

        snap = await self.driver.snapshot()
        self.assertEqual(snap["round_id"], rnd.id)
        self.assertEqual(snap["phase"], "betting")
        self.assertIsNone(snap["crash_point"])
        self.assertIsNone(snap["seed"])
        self.assertEqual(len(snap["crash_hash"]), 64)


class TestRoundFeed(unittest.IsolatedAsyncioTestCase):

    async def test_slow_subscriber_loses_oldest(self):
        feed = RoundFeed(max_queue=2)
        queue = feed.subscribe()
        for n in range(3):
            feed.publish({"n": n})

        self.assertEqual([e["n"] for e in drain(queue)], [1, 2])

        feed.unsubscribe(queue)
        self.assertEqual(feed.subscriber_count, 0)
        feed.publish({"n": 3})
        self.assertTrue(queue.empty())


if __name__ == "__main__":
    unittest.main()
