# utils.py
"""
Utility functions for the Crash game

Includes:
- Id and seed generation
- Commit/reveal hashing for crash points
- Number formatting (Decimal/Float agnostic)
- Money helpers
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

logger = logging.getLogger("naya_crash.utils")

NumberType = Union[float, Decimal, int, str]

CENT = Decimal("0.01")

# =========================
# IDS & FAIRNESS
# =========================

def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round and bet ids.
    """
    return secrets.token_hex(length)


def generate_server_seed(length: int = 32) -> str:
    """
    Secret seed committed to at round creation and revealed after the crash.
    """
    return secrets.token_hex(length)


def hash_sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def crash_commitment(seed: str, crash_point: NumberType) -> str:
    """
    Public hash of a round's crash point.

    Published while the round is open; once the seed is revealed anyone can
    recompute it and confirm the crash point was fixed before betting.
    """
    return hash_sha256(f"{seed}:{format_balance(crash_point)}")


def verify_crash_commitment(seed: str, crash_point: NumberType, expected_hash: str) -> bool:
    # compare_digest keeps the check constant-time
    return hmac.compare_digest(crash_commitment(seed, crash_point), expected_hash)


# =========================
# FORMATTING
# =========================

def format_balance(amount: NumberType) -> str:
    """
    Format an amount with 2 decimals.
    Handles float, Decimal, int, or string inputs safely.
    """
    try:
        val = Decimal(str(amount))
        return f"{val.quantize(CENT, rounding=ROUND_DOWN)}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning("Invalid balance format input: %r", amount)
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


# =========================
# MISC HELPERS
# =========================

def clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(value, max_value))


def to_money(value: NumberType) -> Decimal:
    """
    Convert API input to a 2-decimal Decimal.
    Floats go through str() so 0.1 stays 0.10 rather than 0.1000000000000000055.
    """
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_DOWN)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
