"""
Shared fixtures: a throwaway file-backed SQLite database per test, a
hand-cranked clock and a driver wired to both.

A file (not :memory:) database gives every session its own connection, so
concurrent ledger calls really do race each other.
"""

import shutil
import tempfile
import unittest
from decimal import Decimal

from sqlalchemy.ext.asyncio import async_sessionmaker

from naya_crash.config import Settings
from naya_crash.db import Round, User, get_balance, init_db, make_engine
from naya_crash.driver import RoundDriver
from naya_crash.feed import RoundFeed


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings() -> Settings:
    config = Settings()
    config.COUNTDOWN_SECONDS = 3
    config.COUNTDOWN_TICK_SECONDS = 1.0
    config.MULTIPLIER_TICK_SECONDS = 0.05
    config.MULTIPLIER_SPEED = Decimal("0.14")
    config.NEXT_ROUND_DELAY_SECONDS = 3.0
    config.STUCK_ROUND_TIMEOUT_SECONDS = 300
    config.MIN_BET_AMOUNT = Decimal("0.10")
    config.CRASH_JITTER = 0.0
    return config


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):

    crash_point = "2.50"

    async def asyncSetUp(self):
        self._tmpdir = tempfile.mkdtemp(prefix="naya_crash_")
        self.engine = make_engine(f"sqlite+aiosqlite:///{self._tmpdir}/test.db")
        await init_db(self.engine)
        self.Session = async_sessionmaker(bind=self.engine, expire_on_commit=False)
        self.clock = FakeClock()
        self.config = make_settings()
        self.feed = RoundFeed()
        self.driver = self.make_driver()

    async def asyncTearDown(self):
        await self.driver.stop()
        await self.engine.dispose()
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def make_driver(self, **kwargs) -> RoundDriver:
        kwargs.setdefault("sampler", lambda: Decimal(self.crash_point))
        kwargs.setdefault("feed", self.feed)
        return RoundDriver(
            session_factory=self.Session,
            config=self.config,
            clock=self.clock,
            **kwargs,
        )

    # ---- data helpers ----

    async def add_player(self, player_id: str, balance: str = "100.00") -> None:
        async with self.Session() as session:
            session.add(
                User(
                    player_id=player_id,
                    display_name=player_id.title(),
                    balance=Decimal(balance),
                )
            )
            await session.commit()

    async def balance_of(self, player_id: str) -> Decimal:
        async with self.Session() as session:
            return await get_balance(session, player_id)

    async def load_round(self, round_id: str) -> Round:
        async with self.Session() as session:
            return await session.get(Round, round_id)

    # ---- round helpers ----

    async def open_round(self) -> Round:
        return await self.driver.ensure_round()

    async def start_flight(self) -> float:
        """Tick through the countdown; returns the flight start time."""
        for _ in range(self.config.COUNTDOWN_SECONDS):
            self.clock.advance(1)
            await self.driver.tick()
        return self.clock.now
