# fairness.py
"""
Fairness Generator

Produces one unpredictable crash point per round from a cryptographically
secure entropy source. Two strategies:

- "inverse": r in [0, 1) from 4 secure bytes, mapped through 1/(1-r), then
  bucketed so most rounds land in [1.01, 10.00] with a thin tail up to the cap.
- "hmac": HMAC-SHA256(server_seed, client_seed), first 52 bits mapped through
  floor((100 * 2^52 - h) / (2^52 - h)) / 100. Only sha256(server_seed) is
  published before the crash; revealing both seeds afterwards lets anyone
  recompute the result with verify_crash_point().
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from crash_round.config import GameConfig
from crash_round.errors import FairnessError

logger = logging.getLogger("crash_round.fairness")

E52 = 2 ** 52
E32 = 2 ** 32


# =========================
# SEEDS & HASHES
# =========================

def secure_bytes(n: int) -> bytes:
    """Secure random bytes; raises FairnessError if the OS source fails."""
    try:
        return secrets.token_bytes(n)
    except (OSError, NotImplementedError) as e:
        logger.error(f"Secure entropy source unavailable: {e}")
        raise FairnessError("Secure entropy source unavailable") from e


def generate_server_seed(length: int = 32) -> str:
    """Secret key of the HMAC. Revealed only after the crash."""
    return secure_bytes(length).hex()


def generate_client_seed(length: int = 16) -> str:
    """Message of the HMAC. Independent of the server seed."""
    return secure_bytes(length).hex()


def hmac_sha256(key: str, message: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string.
    Published as the seed commitment while the round is live.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# =========================
# MAPPINGS
# =========================

def clamp_crash_point(
    value: Decimal,
    max_crash: Decimal = GameConfig.MAX_CRASH,
    min_crash: Decimal = GameConfig.MIN_CRASH,
) -> Decimal:
    value = max(value, min_crash)
    value = min(value, max_crash)
    return value.quantize(Decimal("0.01"), rounding=ROUND_DOWN)


def crash_point_from_seeds(
    server_seed: str,
    client_seed: str,
    max_crash: Decimal = GameConfig.MAX_CRASH,
    min_crash: Decimal = GameConfig.MIN_CRASH,
) -> Decimal:
    """
    Deterministic, publicly verifiable mapping of two seeds to a crash point.
    """
    digest = hmac_sha256(server_seed, client_seed)
    h = int(digest[:13], 16)  # 52 bits
    raw = Decimal((100 * E52 - h) // (E52 - h)) / 100
    return clamp_crash_point(raw, max_crash, min_crash)


def verify_crash_point(
    server_seed: str,
    client_seed: str,
    expected: Decimal,
    seed_hash: Optional[str] = None,
    max_crash: Decimal = GameConfig.MAX_CRASH,
    min_crash: Decimal = GameConfig.MIN_CRASH,
) -> bool:
    """
    Check a revealed round: the seeds must reproduce the crash point and,
    when given, the server seed must match its published commitment.
    """
    if seed_hash is not None and not hmac.compare_digest(hash_sha256(server_seed), seed_hash):
        return False
    return crash_point_from_seeds(server_seed, client_seed, max_crash, min_crash) == Decimal(str(expected))


# =========================
# GENERATOR
# =========================

@dataclass(frozen=True)
class FairRoll:
    crash_point: Decimal
    server_seed: str = ""
    client_seed: str = ""
    seed_hash: str = ""


class CrashPointGenerator:
    """
    Rolls a fresh crash point for every round. Nothing is cached between
    rolls, so no value is ever reused.
    """

    STRATEGIES = ("inverse", "hmac")

    def __init__(self, config=GameConfig, strategy: Optional[str] = None) -> None:
        self.config = config
        self.strategy = strategy or config.FAIRNESS_STRATEGY
        if self.strategy not in self.STRATEGIES:
            raise ValueError(f"Unknown fairness strategy: {self.strategy}")

    def generate(self) -> Decimal:
        return self.roll().crash_point

    def roll(self) -> FairRoll:
        if self.strategy == "hmac":
            return self._roll_hmac()
        return self._roll_inverse()

    def _roll_inverse(self) -> FairRoll:
        n = int.from_bytes(secure_bytes(4), "big")
        # 1 / (1 - n/2^32), exact in Decimal
        raw = Decimal(E32) / Decimal(E32 - n)

        # Bucket roll from its own secure draw
        bucket = int.from_bytes(secure_bytes(4), "big") / E32
        if bucket < self.config.LOW_BUCKET_PROB:
            value = max(self.config.MIN_CRASH, min(raw, self.config.LOW_BUCKET_MAX))
        else:
            value = max(self.config.LOW_BUCKET_MAX + Decimal("0.01"), min(raw, self.config.MAX_CRASH))

        return FairRoll(
            crash_point=clamp_crash_point(value, self.config.MAX_CRASH, self.config.MIN_CRASH)
        )

    def _roll_hmac(self) -> FairRoll:
        server_seed = generate_server_seed()
        client_seed = generate_client_seed()
        return FairRoll(
            crash_point=crash_point_from_seeds(
                server_seed, client_seed, self.config.MAX_CRASH, self.config.MIN_CRASH
            ),
            server_seed=server_seed,
            client_seed=client_seed,
            seed_hash=hash_sha256(server_seed),
        )
