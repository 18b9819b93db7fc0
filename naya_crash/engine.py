# engine.py
"""
Crash Game Engine – core math and vocabulary

Responsibilities:
- Strict phase vocabulary (BETTING -> PLAYING -> CRASHED)
- Banded crash point sampling (60% / 25% / 10% / 5%)
- Time-based multiplier curve
- Error taxonomy shared by the ledger, the driver and the API

Everything here is pure; persistence lives in db.py / ledger.py and the
clock lives in driver.py.
"""

from __future__ import annotations

import random
import secrets
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Optional

from naya_crash.utils import CENT, clamp

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- PROBABILITY SETTINGS ---
    # (roll ceiling, band low, band high); bands are half-open [low, high)
    CRASH_BANDS = (
        (0.60, 1.1, 2.0),    # low
        (0.85, 2.0, 3.0),    # medium
        (0.95, 3.0, 5.0),    # high
        (1.00, 5.0, 10.0),   # rare
    )

    MIN_MULTIPLIER = Decimal("1.00")

    # --- GAMEPLAY SPEED ---
    # Linear growth: multiplier = 1 + elapsed_seconds * SPEED
    # 0.14 takes 1.00 -> 2.00 in ~7.1 seconds
    MULTIPLIER_SPEED = Decimal("0.14")

# =========================
# ENUMS & EXCEPTIONS
# =========================

class RoundPhase(str, Enum):
    BETTING = "betting"   # Accepting bets, countdown running
    PLAYING = "playing"   # Multiplier rising
    CRASHED = "crashed"   # Round ended


class RoundStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"


class BetStatus(str, Enum):
    PLAYING = "playing"
    CASHED_OUT = "cashed_out"


# The only forward moves a round can make
TRANSITIONS = {
    RoundPhase.BETTING: RoundPhase.PLAYING,
    RoundPhase.PLAYING: RoundPhase.CRASHED,
}


class EngineError(Exception):
    """Base engine error"""

    status_code = 400
    message = "Request rejected"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.message)


class StateError(EngineError):
    """Action performed in invalid state"""

    status_code = 409
    message = "Round state conflict"


class InvalidPhase(StateError):
    message = "Action not allowed in the current round phase"


class InvalidMultiplier(StateError):
    message = "Too late, the round already crashed"


class BetError(EngineError):
    """Invalid bet operation"""


class DuplicateBet(BetError):
    status_code = 409
    message = "You already have a bet in this round"


class InsufficientFunds(BetError):
    status_code = 402
    message = "Insufficient balance"


class NotFound(BetError):
    status_code = 404
    message = "Bet not found"


class AlreadySettled(BetError):
    status_code = 409
    message = "Bet already cashed out"


class StuckRoundDetected(EngineError):
    """Active round outlived the stuck timeout. Internal only."""

    def __init__(self, round_id: str, age_seconds: float) -> None:
        self.round_id = round_id
        self.age_seconds = age_seconds
        super().__init__(f"Round {round_id} active for {age_seconds:.0f}s")

# =========================
# STATE MACHINE RULES
# =========================

def check_transition(current: RoundPhase, target: RoundPhase) -> None:
    """Raise InvalidPhase unless ``current -> target`` is a legal move."""
    if TRANSITIONS.get(current) != target:
        raise InvalidPhase(f"Cannot move round from {current.value} to {target.value}")


def check_round_age(round_id: str, created_at: float, now: float, timeout: float) -> None:
    age = now - created_at
    if age > timeout:
        raise StuckRoundDetected(round_id, age)

# =====================================================
# MATH & PROBABILITY (CORE LOGIC)
# =====================================================

def sample_crash_point(rng: Optional[random.Random] = None, jitter: float = 0.0) -> Decimal:
    """
    Draw the terminal multiplier of a round.

    A first roll picks the band, a second roll picks a point uniformly inside
    it. The result is rounded *down* to 2 decimals so it never crosses into
    the next band. ``jitter`` adds a small uniform offset that is clamped back
    into the band; it is off unless configured.
    """
    # Cryptographically secure source unless a seeded one is injected
    rng = rng or secrets.SystemRandom()
    roll = rng.random()

    for ceiling, low, high in GameConfig.CRASH_BANDS:
        if roll < ceiling:
            break

    value = low + (high - low) * rng.random()
    if jitter:
        value = clamp(value + rng.uniform(-jitter, jitter), low, high)

    point = Decimal(str(value)).quantize(CENT, rounding=ROUND_DOWN)
    # clamp() can land exactly on the band ceiling
    point = min(point, Decimal(str(high)) - CENT)
    return max(point, GameConfig.MIN_MULTIPLIER)


def multiplier_at(elapsed_seconds: float, speed: Decimal = GameConfig.MULTIPLIER_SPEED) -> Decimal:
    """
    Pure function: time -> multiplier.
    Formula: 1 + elapsed * speed, rounded down to 2 decimals.

    Derived from elapsed wall time rather than accumulated per tick, so a
    late or missed tick never changes the value and any observer holding
    ``play_started_at`` computes the same number.
    """
    if elapsed_seconds <= 0:
        return GameConfig.MIN_MULTIPLIER

    growth = GameConfig.MIN_MULTIPLIER + Decimal(str(elapsed_seconds)) * speed
    return growth.quantize(CENT, rounding=ROUND_DOWN)
