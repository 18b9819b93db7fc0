# db.py
"""
Database Layer

Responsibilities:
- Async database engine & session lifecycle
- Crash round and bet persistence
- Player accounts and ledger-safe balance management (Decimal arithmetic)
- Transaction history with Round ID linking
- Live-bet records for the lobby feed

Alignment with Engine:
- Uses Decimal for all financial values and multipliers
- Round timing columns are epoch seconds, the same clock the driver uses
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from naya_crash.config import settings
from naya_crash.engine import (
    BetStatus,
    GameConfig,
    InsufficientFunds,
    NotFound,
    RoundPhase,
    RoundStatus,
    multiplier_at,
)
from naya_crash.utils import CENT


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    player_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    display_name: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=settings.STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Links financial movement to specific crash rounds.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    round_id: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        index=True,
    )

    # Extra metadata (e.g. "cashout_x1.80")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    user: Mapped[User] = relationship(back_populates="transactions")


class Round(Base):
    """
    One betting -> playing -> crashed cycle.
    Only the round driver writes phase/multiplier; the ledger only bumps totals.
    """

    __tablename__ = "crash_rounds"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    phase: Mapped[RoundPhase] = mapped_column(
        Enum(RoundPhase, name="round_phase"),
        nullable=False,
        default=RoundPhase.BETTING,
    )

    status: Mapped[RoundStatus] = mapped_column(
        Enum(RoundStatus, name="round_status"),
        nullable=False,
        default=RoundStatus.ACTIVE,
        index=True,
    )

    # Secret until the round crashes
    crash_point: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    seed: Mapped[str] = mapped_column(String(64), nullable=False)
    crash_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    multiplier: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=GameConfig.MIN_MULTIPLIER,
    )
    final_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    countdown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bets_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Round totals (display only)
    total_bets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Epoch seconds
    created_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    play_started_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    ended_at: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)

    bets: Mapped[list["Bet"]] = relationship(back_populates="round")

    def to_dict(
        self,
        now: Optional[float] = None,
        speed: Decimal = GameConfig.MULTIPLIER_SPEED,
    ) -> Dict[str, Any]:
        """
        Public view of the round. Crash point and seed stay hidden until the
        round has crashed.
        """
        multiplier = self.multiplier
        if self.phase == RoundPhase.PLAYING and now is not None and self.play_started_at:
            # Recompute from the start time so observers never lag the driver
            multiplier = max(multiplier, multiplier_at(now - self.play_started_at, speed))

        crashed = self.phase == RoundPhase.CRASHED
        return {
            "round_id": self.id,
            "phase": self.phase.value,
            "status": self.status.value,
            "countdown_seconds": self.countdown_seconds if self.phase == RoundPhase.BETTING else 0,
            "multiplier": float(multiplier),
            "play_started_at": self.play_started_at,
            "speed": float(speed),
            "total_bets": self.total_bets,
            "total_amount": float(self.total_amount),
            "crash_hash": self.crash_hash,
            "crash_point": float(self.crash_point) if crashed else None,
            "final_multiplier": _num(self.final_multiplier) if crashed else None,
            "seed": self.seed if crashed else None,
            "ended_at": self.ended_at,
        }


class Bet(Base):
    __tablename__ = "crash_bets"
    __table_args__ = (
        # At most one bet per player per round
        UniqueConstraint("round_id", "player_id", name="uq_crash_bets_round_player"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    round_id: Mapped[str] = mapped_column(
        ForeignKey("crash_rounds.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    player_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)

    stake: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[BetStatus] = mapped_column(
        Enum(BetStatus, name="bet_status"),
        nullable=False,
        default=BetStatus.PLAYING,
    )

    cashout_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    payout: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    placed_at: Mapped[float] = mapped_column(Float, nullable=False)
    cashed_out_at: Mapped[float | None] = mapped_column(Float, nullable=True)

    round: Mapped[Round] = relationship(back_populates="bets")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bet_id": self.id,
            "round_id": self.round_id,
            "player_id": self.player_id,
            "display_name": self.display_name,
            "stake": float(self.stake),
            "status": self.status.value,
            "cashout_multiplier": _num(self.cashout_multiplier),
            "payout": _num(self.payout),
        }


class LiveBet(Base):
    """
    Settled crash bets published for the lobby "live bets" feed.
    Payout is signed: the win amount, or minus the stake for a loss.
    """

    __tablename__ = "live_bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game: Mapped[str] = mapped_column(String(32), nullable=False, default="Crash")
    round_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    player_id: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(64), nullable=False)
    bet_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payout: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(8), nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


# =====================================================
# ENGINE & SESSION
# =====================================================

def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


engine = make_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


# =====================================================
# INIT
# =====================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    player_id: str,
    display_name: Optional[str] = None,
) -> User:
    """
    Fetches a player or creates one with the starting balance.
    """
    result = await session.execute(
        select(User).where(User.player_id == player_id)
    )
    user = result.scalar_one_or_none()

    if user:
        return user

    new_user = User(
        player_id=player_id,
        display_name=display_name or player_id,
        balance=settings.STARTING_BALANCE,
    )
    session.add(new_user)

    try:
        await session.commit()
        await session.refresh(new_user)
        return new_user
    except IntegrityError:
        # Created in parallel by another request
        await session.rollback()
        return await get_or_create_user(session, player_id, display_name)


async def get_balance(session: AsyncSession, player_id: str) -> Decimal:
    balance = await session.scalar(
        select(User.balance).where(User.player_id == player_id)
    )
    if balance is None:
        raise NotFound("Player account not found")
    return balance


async def apply_transaction(
    session: AsyncSession,
    player_id: str,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: str | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Atomic balance update + immutable ledger entry.

    The balance check and the write are one conditional UPDATE, so two
    concurrent debits can never both pass the check. Nothing is committed
    here: the caller commits together with the bet change it pays for.

    Returns the balance after the change.
    """
    amount_quantized = amount.quantize(CENT)

    stmt = (
        update(User)
        .where(User.player_id == player_id)
        .values(balance=User.balance + amount_quantized, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if amount_quantized < 0:
        stmt = stmt.where(User.balance >= -amount_quantized)

    result = await session.execute(stmt)
    if result.rowcount == 0:
        exists = await session.scalar(select(User.id).where(User.player_id == player_id))
        if exists is None:
            raise NotFound("Player account not found")
        raise InsufficientFunds()

    user_id, new_balance = (
        await session.execute(
            select(User.id, User.balance).where(User.player_id == player_id)
        )
    ).one()

    session.add(
        Transaction(
            user_id=user_id,
            type=tx_type,
            amount=amount_quantized,
            balance_after=new_balance,
            round_id=round_id,
            reference=reference,
        )
    )
    await session.flush()

    return new_balance


# =====================================================
# BALANCE COLLABORATOR
# =====================================================

async def debit(
    session: AsyncSession,
    player_id: str,
    amount: Decimal,
    round_id: str | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Deducts money (placing a bet). Raises InsufficientFunds.
    """
    return await apply_transaction(
        session,
        player_id,
        -abs(amount),  # Ensure negative
        TransactionType.BET,
        round_id,
        reference,
    )


async def credit(
    session: AsyncSession,
    player_id: str,
    amount: Decimal,
    round_id: str | None = None,
    reference: str | None = None,
) -> Decimal:
    """
    Adds money (cashing out).
    """
    return await apply_transaction(
        session,
        player_id,
        abs(amount),  # Ensure positive
        TransactionType.WIN,
        round_id,
        reference,
    )
