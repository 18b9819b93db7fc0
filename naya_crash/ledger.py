# ledger.py
"""
Bet Ledger

One bet per player per round, placed while the round is betting and cashed
out at most once while it is playing. Every operation is a single short
transaction: the stake debit / payout credit commits together with the bet
row it belongs to, or not at all.

Errors are terminal for the request; nothing here retries.
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from naya_crash.config import settings
from naya_crash.db import Bet, Round, credit, debit
from naya_crash.engine import (
    AlreadySettled,
    BetStatus,
    DuplicateBet,
    GameConfig,
    InvalidMultiplier,
    InvalidPhase,
    NotFound,
    RoundPhase,
    RoundStatus,
    multiplier_at,
)
from naya_crash.utils import CENT, format_balance, format_multiplier, generate_unique_id, to_money

logger = logging.getLogger("naya_crash.ledger")


# =====================================================
# READS
# =====================================================

async def get_active_round(session: AsyncSession) -> Optional[Round]:
    result = await session.execute(
        select(Round)
        .where(Round.status == RoundStatus.ACTIVE)
        .order_by(Round.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def round_bets(session: AsyncSession, round_id: str) -> List[Bet]:
    result = await session.scalars(
        select(Bet).where(Bet.round_id == round_id).order_by(Bet.placed_at)
    )
    return list(result.all())


async def get_player_bet(session: AsyncSession, round_id: str, player_id: str) -> Optional[Bet]:
    return await session.scalar(
        select(Bet).where(Bet.round_id == round_id, Bet.player_id == player_id)
    )


async def get_bet(session: AsyncSession, bet_id: str, player_id: Optional[str] = None) -> Optional[Bet]:
    stmt = select(Bet).where(Bet.id == bet_id).execution_options(populate_existing=True)
    if player_id is not None:
        stmt = stmt.where(Bet.player_id == player_id)
    return await session.scalar(stmt)


async def round_totals(session: AsyncSession, round_id: str) -> Dict[str, Any]:
    row = (
        await session.execute(
            select(Round.total_bets, Round.total_amount).where(Round.id == round_id)
        )
    ).one_or_none()
    if row is None:
        raise NotFound("Round not found")
    return {"total_bets": row.total_bets, "total_amount": float(row.total_amount)}


async def recent_rounds(session: AsyncSession, limit: int = 5) -> List[Dict[str, Any]]:
    """Last finalized rounds, newest first, for the recent-crashes strip."""
    result = await session.scalars(
        select(Round)
        .where(Round.status == RoundStatus.FINISHED)
        .order_by(Round.ended_at.desc())
        .limit(limit)
    )
    return [
        {
            "round_id": r.id,
            "final_multiplier": float(r.final_multiplier or GameConfig.MIN_MULTIPLIER),
            "ended_at": r.ended_at,
        }
        for r in result.all()
    ]


# =====================================================
# COMMANDS
# =====================================================

async def place_bet(
    session: AsyncSession,
    round_id: str,
    player_id: str,
    display_name: str,
    stake: Decimal | float,
    *,
    now: Optional[float] = None,
    min_stake: Decimal = settings.MIN_BET_AMOUNT,
) -> Bet:
    """
    Record a bet and debit the stake.

    Raises InvalidPhase, NotFound (unknown round), DuplicateBet or
    InsufficientFunds; ValueError for a stake below the minimum.
    """
    stake_dec = to_money(stake)
    if stake_dec <= 0:
        raise ValueError("Bet must be positive")
    if stake_dec < min_stake:
        raise ValueError(f"Minimum bet is {format_balance(min_stake)}")

    now = time.time() if now is None else now

    try:
        # Phase gate and totals bump in one write. It also takes the round's
        # write lock first, so bets for a round are applied one at a time.
        gate = await session.execute(
            update(Round)
            .where(
                Round.id == round_id,
                Round.status == RoundStatus.ACTIVE,
                Round.phase == RoundPhase.BETTING,
                Round.bets_locked.is_(False),
            )
            .values(
                total_bets=Round.total_bets + 1,
                total_amount=Round.total_amount + stake_dec,
            )
            .execution_options(synchronize_session=False)
        )
        if gate.rowcount == 0:
            exists = await session.scalar(select(Round.id).where(Round.id == round_id))
            if exists is None:
                raise NotFound("Round not found")
            raise InvalidPhase("Betting is closed for this round")

        existing = await session.scalar(
            select(Bet.id).where(Bet.round_id == round_id, Bet.player_id == player_id)
        )
        if existing is not None:
            raise DuplicateBet()

        await debit(session, player_id, stake_dec, round_id=round_id, reference="crash_bet")

        bet = Bet(
            id=generate_unique_id(),
            round_id=round_id,
            player_id=player_id,
            display_name=display_name,
            stake=stake_dec,
            status=BetStatus.PLAYING,
            placed_at=now,
        )
        session.add(bet)
        await session.flush()
        await session.commit()
    except IntegrityError:
        # Unique (round_id, player_id) caught a racing duplicate
        await session.rollback()
        raise DuplicateBet() from None
    except Exception:
        await session.rollback()
        raise

    logger.debug("Bet %s placed: %s on round %s by %s", bet.id, format_balance(stake_dec), round_id, player_id)
    return bet


async def cash_out(
    session: AsyncSession,
    bet_id: str,
    round_id: Optional[str] = None,
    requested_multiplier: Decimal | float | None = None,
    *,
    player_id: Optional[str] = None,
    now: Optional[float] = None,
    speed: Decimal = settings.MULTIPLIER_SPEED,
) -> Decimal:
    """
    Lock in a multiplier for a playing bet and credit the payout.

    The paid multiplier is the lower of the requested one and the server's
    own multiplier at ``now``; a client may lag the server but never lead it.
    A request above the crash point lost the race with the crash tick.

    Raises InvalidPhase, NotFound, AlreadySettled or InvalidMultiplier.
    """
    now = time.time() if now is None else now

    bet_filter = [Bet.id == bet_id]
    if player_id is not None:
        bet_filter.append(Bet.player_id == player_id)

    try:
        if round_id is None:
            round_id = await session.scalar(select(Bet.round_id).where(*bet_filter))
            if round_id is None:
                raise NotFound()

        rnd = await session.get(Round, round_id, populate_existing=True)
        if rnd is None:
            raise NotFound("Round not found")
        if rnd.phase != RoundPhase.PLAYING or rnd.status != RoundStatus.ACTIVE:
            raise InvalidPhase("Round is not in flight")

        bet = await session.scalar(
            select(Bet)
            .where(Bet.round_id == round_id, *bet_filter)
            .execution_options(populate_existing=True)
        )
        if bet is None:
            raise NotFound()
        if bet.status != BetStatus.PLAYING:
            raise AlreadySettled()

        server_mult = multiplier_at(now - (rnd.play_started_at or now), speed)
        if requested_multiplier is None:
            final_mult = server_mult
        else:
            requested = Decimal(str(requested_multiplier)).quantize(CENT, rounding=ROUND_DOWN)
            if requested > rnd.crash_point:
                raise InvalidMultiplier()
            if requested < GameConfig.MIN_MULTIPLIER:
                raise InvalidMultiplier("Invalid multiplier")
            final_mult = min(requested, server_mult)

        if final_mult > rnd.crash_point:
            raise InvalidMultiplier()

        payout = (bet.stake * final_mult).quantize(CENT, rounding=ROUND_DOWN)

        # playing -> cashed_out exactly once, and only while the round still flies
        still_playing = select(Round.id).where(
            Round.id == round_id,
            Round.phase == RoundPhase.PLAYING,
        )
        settled = await session.execute(
            update(Bet)
            .where(
                Bet.id == bet.id,
                Bet.status == BetStatus.PLAYING,
                Bet.round_id.in_(still_playing),
            )
            .values(
                status=BetStatus.CASHED_OUT,
                cashout_multiplier=final_mult,
                payout=payout,
                cashed_out_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if settled.rowcount == 0:
            status = await session.scalar(select(Bet.status).where(Bet.id == bet.id))
            if status == BetStatus.CASHED_OUT:
                raise AlreadySettled()
            raise InvalidMultiplier()

        await credit(
            session,
            bet.player_id,
            payout,
            round_id=round_id,
            reference=f"cashout_{format_multiplier(final_mult)}",
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.debug("Bet %s cashed out at %s for %s", bet_id, format_multiplier(final_mult), format_balance(payout))
    return payout
