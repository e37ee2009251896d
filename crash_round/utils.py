# utils.py
"""
Utility functions for the crash round engine

Includes:
- Round ID minting
- Epoch-millisecond time helpers
- Decimal helpers for multipliers (two-decimal, round-down)
- Display formatting
"""

from __future__ import annotations

import logging
import secrets
import time
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

logger = logging.getLogger("crash_round.utils")

NumberType = Union[float, Decimal, int, str]

ONE = Decimal("1.00")
CENT = Decimal("0.01")


# =========================
# IDS & TIME
# =========================

def now_ms(clock=time.time) -> int:
    """Current time in epoch milliseconds."""
    return int(clock() * 1000)


def generate_round_id(clock=time.time) -> str:
    """
    Mint a unique round id.

    The first 12 hex chars are the creation time in milliseconds, so ids
    sort in creation order; the suffix is secure random.
    """
    return f"{now_ms(clock):012x}{secrets.token_hex(6)}"


# =========================
# DECIMAL HELPERS
# =========================

def to_multiplier(value: NumberType) -> Decimal:
    """
    Quantize a multiplier to two decimals, rounding down.
    Anything that is not a finite number >= 1.00 becomes 1.00.
    """
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Invalid multiplier {value!r}, clamping to 1.00")
        return ONE

    if not d.is_finite() or d < ONE:
        logger.warning(f"Invalid multiplier {value!r}, clamping to 1.00")
        return ONE

    return d.quantize(CENT, rounding=ROUND_DOWN)


def safe_decimal(value: NumberType, default: str = "0.00") -> Decimal:
    """
    Safely convert input to Decimal.
    Used on values read back from the store.
    """
    if value is None:
        return Decimal(default)
    try:
        d = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Failed to convert {value} to Decimal, using default {default}")
        return Decimal(default)
    if not d.is_finite():
        return Decimal(default)
    return d


# =========================
# FORMATTING
# =========================

def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"
