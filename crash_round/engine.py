# engine.py
"""
Crash Round Engine

Responsibilities:
- Strict State Machine (WAITING -> RUNNING -> CRASHED)
- Multiplier clock: pure function of elapsed time, recomputed every tick
- Force-crash override polled once per tick
- Post-crash bet classification (won at x / lost) and history hand-off

The engine keeps no round state between store round trips except the secret
crash point and the last multiplier it published. Everything externally
mutable (force_crash, bets) is re-read from the store.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from decimal import Decimal, getcontext
from enum import Enum
from typing import Any, Dict, List, Optional

from crash_round.config import GameConfig
from crash_round.errors import RoundMissingError
from crash_round.fairness import CrashPointGenerator, FairRoll
from crash_round.history import HistoryRecorder
from crash_round.utils import (
    ONE,
    format_multiplier,
    generate_round_id,
    now_ms,
    safe_decimal,
    to_multiplier,
)

# Ensure high precision for internal calculations
getcontext().prec = 50

logger = logging.getLogger("crash_round.engine")


# =========================
# ENUMS
# =========================

class RoundStatus(str, Enum):
    WAITING = "waiting"  # Accepting bets
    RUNNING = "running"  # Multiplier rising
    CRASHED = "crashed"  # Round ended


# =========================
# DOMAIN MODELS
# =========================

@dataclass(frozen=True)
class BetOutcome:
    user_id: str
    amount: Decimal
    won: bool
    cashout_multiplier: Optional[Decimal] = None


@dataclass
class RoundResult:
    round_id: str
    crash_point: Decimal
    final_multiplier: Decimal
    forced: bool = False

    # Revealed in history after the crash
    server_seed: str = ""
    client_seed: str = ""

    # Epoch seconds from the engine clock
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    published: List[Decimal] = field(default_factory=list)
    outcomes: List[BetOutcome] = field(default_factory=list)


# =========================
# MULTIPLIER CLOCK
# =========================

def multiplier_at(elapsed_seconds: float, growth_rate: float = GameConfig.GROWTH_RATE) -> Decimal:
    """
    Pure function: time -> multiplier.
    Formula: e^(growth_rate * seconds), full precision.

    Negative or non-finite elapsed time (clock skew) clamps to 1.00.
    """
    if not isinstance(elapsed_seconds, (int, float)) or not math.isfinite(elapsed_seconds):
        logger.warning(f"Non-finite elapsed time {elapsed_seconds!r}, clamping multiplier to 1.00")
        return ONE
    if elapsed_seconds < 0:
        logger.warning(f"Negative elapsed time {elapsed_seconds:.3f}s, clamping multiplier to 1.00")
        return ONE
    if elapsed_seconds == 0:
        return ONE

    return Decimal(growth_rate * elapsed_seconds).exp()


# =========================
# SETTLEMENT
# =========================

def classify_bets(bets: Dict[str, Dict[str, Any]], final_multiplier: Decimal) -> List[BetOutcome]:
    """
    Observes, never mutates: cashed-out bets are wins at their recorded
    multiplier, everything else is a loss.
    """
    outcomes = []
    for user_id, bet in sorted(bets.items()):
        amount = safe_decimal(bet.get("amount"))
        if bet.get("cashedOut"):
            mult = safe_decimal(bet.get("cashoutMultiplier"), "1.00")
            if mult > final_multiplier:
                logger.error(
                    f"User {user_id} cashed out at {format_multiplier(mult)} "
                    f"above final {format_multiplier(final_multiplier)}"
                )
            outcomes.append(BetOutcome(user_id, amount, True, mult))
        else:
            outcomes.append(BetOutcome(user_id, amount, False))
    return outcomes


# =========================
# ENGINE CLASS
# =========================

class CrashRoundEngine:
    """
    One Waiting -> Running -> Crashed cycle per run_cycle() call.

    Suspension points are the store round trips and self._sleep; nothing
    else yields, so one engine instance never overlaps with itself.
    """

    def __init__(
        self,
        store,
        recorder=None,
        generator: Optional[CrashPointGenerator] = None,
        config=GameConfig,
        clock=time.time,
        sleep=asyncio.sleep,
    ) -> None:
        self.store = store
        self.config = config
        self.generator = generator or CrashPointGenerator(config)
        self.recorder = recorder or HistoryRecorder(
            store,
            attempts=config.HISTORY_RETRY_ATTEMPTS,
            delay=config.HISTORY_RETRY_DELAY_SEC,
            sleep=sleep,
        )
        self._clock = clock
        self._sleep = sleep

        # Round currently published by this engine, None between cycles
        self.current_round_id: Optional[str] = None

    # =====================================================
    # CYCLE
    # =====================================================

    async def run_cycle(self) -> RoundResult:
        self.current_round_id = None
        result = await self._waiting_phase()
        await self._running_phase(result)
        await self._crashed_phase(result)
        return result

    async def _waiting_phase(self) -> RoundResult:
        round_id = generate_round_id(self._clock)
        roll: FairRoll = self.generator.roll()

        logger.info(f"New round #{round_id} (seed hash {roll.seed_hash or '-'})")

        await self.store.create_round(
            round_id=round_id,
            status=RoundStatus.WAITING,
            multiplier=ONE,
            next_round_time=now_ms(self._clock) + self.config.WAITING_WINDOW_MS,
            seed_hash=roll.seed_hash or None,
        )
        self.current_round_id = round_id

        await self._sleep(self.config.WAITING_WINDOW_MS / 1000)

        return RoundResult(
            round_id=round_id,
            crash_point=roll.crash_point,
            final_multiplier=ONE,
            server_seed=roll.server_seed,
            client_seed=roll.client_seed,
        )

    async def _running_phase(self, result: RoundResult) -> None:
        start = self._clock()
        result.started_at = start
        await self.store.update_round(
            round_id=result.round_id,
            status=RoundStatus.RUNNING,
            start_time=int(start * 1000),
        )
        logger.info(f"Round #{result.round_id} is now running")

        tick = self.config.TICK_INTERVAL_MS / 1000
        last = ONE

        while True:
            current = multiplier_at(self._clock() - start, self.config.GROWTH_RATE)

            # Re-read externally mutable state before publishing anything
            state = await self.store.read_round()
            if state is None or state.get("roundId") != result.round_id:
                raise RoundMissingError(f"Round {result.round_id} vanished while running")

            if state.get("forceCrash"):
                logger.warning(f"Force crash initiated by admin on round #{result.round_id}")
                result.forced = True
                result.final_multiplier = self._forced_multiplier(last)
                break

            if current >= result.crash_point:
                result.final_multiplier = result.crash_point
                break

            # Never publish below a value already published
            last = max(last, to_multiplier(current))
            await self.store.update_round(round_id=result.round_id, multiplier=last)
            result.published.append(last)

            await self._sleep(tick)

        result.ended_at = self._clock()

    async def _crashed_phase(self, result: RoundResult) -> None:
        result.final_multiplier = to_multiplier(result.final_multiplier)
        final = result.final_multiplier

        # Commit and history record complete before a cancellation is honoured
        settle = asyncio.ensure_future(self._commit_crash(result))
        try:
            await asyncio.shield(settle)
        except asyncio.CancelledError:
            await settle
            raise

        state = await self.store.read_round()
        if state is not None and state.get("roundId") == result.round_id:
            result.outcomes = classify_bets(state.get("bets") or {}, final)
        for outcome in result.outcomes:
            if outcome.won:
                logger.info(
                    f"User {outcome.user_id} already cashed out at "
                    f"{format_multiplier(outcome.cashout_multiplier)}"
                )
            else:
                logger.info(f"User {outcome.user_id} lost {outcome.amount}")

        logger.info("Crash result saved. Waiting for next round...")
        await self._sleep(self.config.CRASHED_WINDOW_MS / 1000)

    async def _commit_crash(self, result: RoundResult) -> None:
        final = result.final_multiplier

        # Cash-outs arriving after this commit are rejected by the store
        await self.store.update_round(
            round_id=result.round_id,
            status=RoundStatus.CRASHED,
            multiplier=final,
            crashed_at=final,
        )
        logger.info(f"Round #{result.round_id} crashed at {format_multiplier(final)}")

        await self.recorder.record(
            result.round_id,
            final,
            now_ms(self._clock),
            forced=result.forced,
            server_seed=result.server_seed,
            client_seed=result.client_seed,
        )

    def _forced_multiplier(self, last_published: Decimal) -> Decimal:
        if self.config.FORCE_CRASH_POLICY == "reset":
            return ONE
        return last_published
