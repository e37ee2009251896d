# config.py
"""
Runtime configuration for the crash round engine.

Every value is read once from the environment at import time. Tests and
embedders override values by subclassing GameConfig.
"""

from __future__ import annotations

import os
from decimal import Decimal


def env_flag(name: str, default: str = "") -> bool:
    """True only for an explicit 1 / true / yes / on."""
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crash.db"
)

DB_ECHO = env_flag("DB_ECHO")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class GameConfig:
    # --- PHASE TIMING ---
    WAITING_WINDOW_MS = int(os.getenv("CRASH_WAITING_WINDOW_MS", "10000"))
    CRASHED_WINDOW_MS = int(os.getenv("CRASH_CRASHED_WINDOW_MS", "5000"))
    TICK_INTERVAL_MS = int(os.getenv("CRASH_TICK_INTERVAL_MS", "100"))

    # --- GAMEPLAY SPEED ---
    # Multiplier = e^(GROWTH_RATE * seconds)
    # 0.06 takes 1.00 -> 2.00 in ~11.55 seconds
    GROWTH_RATE = float(os.getenv("CRASH_GROWTH_RATE", "0.06"))

    # --- PROBABILITY SETTINGS ---
    MIN_CRASH = Decimal("1.01")
    MAX_CRASH = Decimal(os.getenv("CRASH_MAX_MULTIPLIER", "50.00"))

    # "inverse": bucketed 1/(1-r); "hmac": seed-committed, verifiable
    FAIRNESS_STRATEGY = os.getenv("CRASH_FAIRNESS_STRATEGY", "hmac")

    # Inverse strategy: share of rounds kept in [MIN_CRASH, LOW_BUCKET_MAX]
    LOW_BUCKET_PROB = float(os.getenv("CRASH_LOW_BUCKET_PROB", "0.95"))
    LOW_BUCKET_MAX = Decimal("10.00")

    # --- FORCE CRASH ---
    # "current": freeze at the last published multiplier
    # "reset": report 1.00 (total loss for open bets)
    FORCE_CRASH_POLICY = os.getenv("CRASH_FORCE_POLICY", "current")

    # --- SUPERVISION ---
    RESTART_BACKOFF_SEC = float(os.getenv("CRASH_RESTART_BACKOFF_SEC", "5.0"))
    WATCH_INTERVAL_SEC = float(os.getenv("CRASH_WATCH_INTERVAL_SEC", "1.0"))

    HISTORY_RETRY_ATTEMPTS = int(os.getenv("CRASH_HISTORY_RETRIES", "3"))
    HISTORY_RETRY_DELAY_SEC = 0.5
