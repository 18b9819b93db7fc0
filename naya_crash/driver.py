# driver.py
"""
Round Driver – the single authoritative writer of crash rounds

Responsibilities:
- Owns the game clock (one asyncio task, start/stop lifecycle)
- BETTING: countdown at 1 Hz, then lock bets and start the flight
- PLAYING: recompute the multiplier every fine tick, crash at the crash point
- CRASHED: finalize, publish settled bets, next round after a short delay
- Self-healing: duplicate active rounds and stuck rounds are force-finalized

Every phase write is a compare-and-set UPDATE on the expected phase, so a
second driver racing this one can never emit a second crash for a round.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from naya_crash.config import Settings, settings
from naya_crash.db import AsyncSessionLocal, Round
from naya_crash.engine import (
    GameConfig,
    RoundPhase,
    RoundStatus,
    StuckRoundDetected,
    check_round_age,
    check_transition,
    multiplier_at,
    sample_crash_point,
)
from naya_crash.feed import DatabaseLiveBetSink, LiveBetSink, RoundFeed
from naya_crash.ledger import get_active_round, round_bets
from naya_crash.utils import crash_commitment, format_multiplier, generate_server_seed, generate_unique_id

logger = logging.getLogger("naya_crash.driver")


class RoundDriver:
    """
    Drives one round at a time through betting -> playing -> crashed.

    Run exactly one started driver per deployment. Any number of readers can
    follow along through ``feed`` or by recomputing the multiplier from a
    round's ``play_started_at``.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        config: Optional[Settings] = None,
        feed: Optional[RoundFeed] = None,
        sink: Optional[LiveBetSink] = None,
        clock: Callable[[], float] = time.time,
        sampler: Optional[Callable[[], Decimal]] = None,
    ) -> None:
        self._session_factory = session_factory or AsyncSessionLocal
        self.config = config or settings
        self.feed = feed or RoundFeed()
        self.sink = sink or DatabaseLiveBetSink()
        self._clock = clock
        self._sampler = sampler or (lambda: sample_crash_point(jitter=self.config.CRASH_JITTER))
        self._task: Optional[asyncio.Task] = None

    # =====================================================
    # LIFECYCLE
    # =====================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def now(self) -> float:
        return self._clock()

    async def start(self) -> None:
        if self.running:
            return
        rnd = await self.ensure_round()
        self._task = asyncio.create_task(self._run(), name="crash-round-driver")
        logger.info("Round driver started on round %s (%s)", rnd.id, rnd.phase.value)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Round driver stopped")

    async def _run(self) -> None:
        delay = self.config.COUNTDOWN_TICK_SECONDS
        while True:
            await asyncio.sleep(delay)
            try:
                delay = await self.tick()
            except Exception:
                # The clock must not stall: log and try again on the next tick
                logger.exception("Round tick failed, retrying")
                delay = self.config.MULTIPLIER_TICK_SECONDS

    # =====================================================
    # TICK
    # =====================================================

    async def tick(self) -> float:
        """
        Advance the active round by one step.
        Returns the number of seconds until the next tick is due.
        """
        now = self._clock()
        async with self._session_factory() as session:
            rnd = await self._current_round(session, now)

            if rnd is None:
                await self.start_new_round(session, now)
                return self.config.COUNTDOWN_TICK_SECONDS

            if rnd.phase == RoundPhase.BETTING:
                return await self._tick_betting(session, rnd, now)

            if rnd.phase == RoundPhase.PLAYING:
                return await self._tick_playing(session, rnd, now)

            # Crashed but never marked finished
            await self._force_finalize(session, rnd, now)
            await session.commit()
            return self.config.NEXT_ROUND_DELAY_SECONDS

    async def ensure_round(self) -> Round:
        """Return the active round, creating one if there is none."""
        now = self._clock()
        async with self._session_factory() as session:
            rnd = await self._current_round(session, now)
            if rnd is None:
                rnd = await self.start_new_round(session, now)
            return rnd

    async def start_new_round(self, session: AsyncSession, now: Optional[float] = None) -> Round:
        now = self._clock() if now is None else now

        leftovers = await session.scalars(
            select(Round).where(Round.status == RoundStatus.ACTIVE)
        )
        for stale in leftovers.all():
            await self._force_finalize(session, stale, now)

        crash_point = self._sampler()
        seed = generate_server_seed()
        rnd = Round(
            id=generate_unique_id(),
            phase=RoundPhase.BETTING,
            status=RoundStatus.ACTIVE,
            crash_point=crash_point,
            seed=seed,
            crash_hash=crash_commitment(seed, crash_point),
            multiplier=GameConfig.MIN_MULTIPLIER,
            countdown_seconds=self.config.COUNTDOWN_SECONDS,
            bets_locked=False,
            total_bets=0,
            total_amount=Decimal("0.00"),
            created_at=now,
        )
        session.add(rnd)
        await session.commit()

        logger.info("Round %s created, betting for %ss", rnd.id, rnd.countdown_seconds)
        self._publish(rnd, now)
        return rnd

    async def _current_round(self, session: AsyncSession, now: float) -> Optional[Round]:
        result = await session.scalars(
            select(Round)
            .where(Round.status == RoundStatus.ACTIVE)
            .order_by(Round.created_at.desc())
            .execution_options(populate_existing=True)
        )
        active = list(result.all())

        if len(active) > 1:
            logger.warning("Found %d active rounds, keeping %s", len(active), active[0].id)
            for extra in active[1:]:
                await self._force_finalize(session, extra, now)
            await session.commit()

        return active[0] if active else None

    async def _tick_betting(self, session: AsyncSession, rnd: Round, now: float) -> float:
        remaining = rnd.countdown_seconds - 1

        if remaining > 0:
            result = await session.execute(
                update(Round)
                .where(
                    Round.id == rnd.id,
                    Round.phase == RoundPhase.BETTING,
                    Round.countdown_seconds == rnd.countdown_seconds,
                )
                .values(countdown_seconds=remaining)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount:
                await session.refresh(rnd)
                self._publish(rnd, now)
            return self.config.COUNTDOWN_TICK_SECONDS

        check_transition(rnd.phase, RoundPhase.PLAYING)
        result = await session.execute(
            update(Round)
            .where(Round.id == rnd.id, Round.phase == RoundPhase.BETTING)
            .values(
                phase=RoundPhase.PLAYING,
                countdown_seconds=0,
                bets_locked=True,
                play_started_at=now,
                multiplier=GameConfig.MIN_MULTIPLIER,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            await session.refresh(rnd)
            logger.info("Round %s in flight with %d bets", rnd.id, rnd.total_bets)
            self._publish(rnd, now)
        return self.config.MULTIPLIER_TICK_SECONDS

    async def _tick_playing(self, session: AsyncSession, rnd: Round, now: float) -> float:
        current = multiplier_at(now - rnd.play_started_at, self.config.MULTIPLIER_SPEED)

        if current >= rnd.crash_point:
            await self._crash(session, rnd, now)
            return self.config.NEXT_ROUND_DELAY_SECONDS

        if current > rnd.multiplier:
            await session.execute(
                update(Round)
                .where(Round.id == rnd.id, Round.phase == RoundPhase.PLAYING)
                .values(multiplier=current)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            self._publish(rnd, now)
        return self.config.MULTIPLIER_TICK_SECONDS

    async def _crash(self, session: AsyncSession, rnd: Round, now: float) -> None:
        check_transition(rnd.phase, RoundPhase.CRASHED)
        result = await session.execute(
            update(Round)
            .where(
                Round.id == rnd.id,
                Round.phase == RoundPhase.PLAYING,
                Round.status == RoundStatus.ACTIVE,
            )
            .values(
                phase=RoundPhase.CRASHED,
                status=RoundStatus.FINISHED,
                # The crash point, not the tick value that overshot it
                multiplier=rnd.crash_point,
                final_multiplier=rnd.crash_point,
                bets_locked=True,
                ended_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if not result.rowcount:
            return

        await session.refresh(rnd)
        round_id = rnd.id
        logger.info("Round %s crashed at %s", round_id, format_multiplier(rnd.crash_point))
        self._publish(rnd, now)

        try:
            await self.sink.publish(session, rnd, await round_bets(session, round_id))
            await session.commit()
        except Exception:
            # rollback expires rnd; only round_id is safe past this point
            await session.rollback()
            logger.exception("Publishing live bets failed for round %s", round_id)

    async def _force_finalize(self, session: AsyncSession, rnd: Round, now: float) -> bool:
        """
        Crash a round outside the normal path. No-op if it is already finished.
        """
        final = rnd.multiplier or GameConfig.MIN_MULTIPLIER
        result = await session.execute(
            update(Round)
            .where(Round.id == rnd.id, Round.status == RoundStatus.ACTIVE)
            .values(
                phase=RoundPhase.CRASHED,
                status=RoundStatus.FINISHED,
                final_multiplier=final,
                bets_locked=True,
                ended_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning("Round %s force-finalized at %s", rnd.id, format_multiplier(final))
            return True
        return False

    # =====================================================
    # SWEEP
    # =====================================================

    async def sweep_stuck_rounds(self) -> int:
        """
        Finalize active rounds older than the stuck timeout.

        Runs on its own schedule, independent of the tick loop, so a round
        left behind by a dead driver process is still closed. Returns the
        number of rounds finalized.
        """
        now = self._clock()
        timeout = self.config.STUCK_ROUND_TIMEOUT_SECONDS
        swept = 0

        async with self._session_factory() as session:
            active = await session.scalars(
                select(Round).where(Round.status == RoundStatus.ACTIVE)
            )
            for rnd in active.all():
                try:
                    check_round_age(rnd.id, rnd.created_at, now, timeout)
                except StuckRoundDetected as exc:
                    logger.warning("Stuck round detected: %s", exc)
                    if await self._force_finalize(session, rnd, now):
                        swept += 1
            await session.commit()

        return swept

    # =====================================================
    # VIEWS
    # =====================================================

    def round_view(self, rnd: Round) -> Dict[str, Any]:
        return rnd.to_dict(self._clock(), self.config.MULTIPLIER_SPEED)

    async def snapshot(self) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            rnd = await get_active_round(session)
            return self.round_view(rnd) if rnd else None

    def _publish(self, rnd: Round, now: float) -> None:
        self.feed.publish({"type": "round", **rnd.to_dict(now, self.config.MULTIPLIER_SPEED)})
