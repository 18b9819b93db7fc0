# feed.py
"""
Outbound event plumbing.

- RoundFeed: in-process pub/sub of round and bet events; the WebSocket
  endpoint is one subscriber per connection.
- DatabaseLiveBetSink: publishes settled crash bets to the live_bets table
  the lobby reads from.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Protocol, Set

from sqlalchemy.ext.asyncio import AsyncSession

from naya_crash.db import Bet, LiveBet, Round
from naya_crash.engine import BetStatus

logger = logging.getLogger("naya_crash.feed")


class RoundFeed:
    """
    Fan-out of events to subscriber queues.

    Publishing never blocks the driver: a subscriber that falls behind loses
    its oldest event.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: Dict[str, Any]) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)


class LiveBetSink(Protocol):
    async def publish(self, session: AsyncSession, rnd: Round, bets: Iterable[Bet]) -> None:
        ...


class DatabaseLiveBetSink:
    game = "Crash"

    async def publish(self, session: AsyncSession, rnd: Round, bets: Iterable[Bet]) -> None:
        """
        Stage one live_bets row per bet. Nothing is committed here: the
        caller owns the transaction.
        """
        count = 0
        for bet in bets:
            won = bet.status == BetStatus.CASHED_OUT
            session.add(
                LiveBet(
                    game=self.game,
                    round_id=rnd.id,
                    player_id=bet.player_id,
                    display_name=bet.display_name,
                    bet_amount=bet.stake,
                    multiplier=bet.cashout_multiplier if won else rnd.final_multiplier,
                    payout=bet.payout if won else -bet.stake,
                    status="won" if won else "lost",
                    created_at=rnd.ended_at,
                )
            )
            count += 1
        await session.flush()
        logger.debug("Staged %d live bets for round %s", count, rnd.id)
