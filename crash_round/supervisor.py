# supervisor.py
"""
Engine Supervisor

Runs the round engine forever as a supervised task loop:
- a completed cycle starts the next one straight away
- a failed cycle is abandoned (its crash point is never replayed), then a
  fresh cycle starts after RESTART_BACKOFF_SEC
- a reset signal (round record wiped, or request_restart()) cancels the
  running cycle and starts a fresh one immediately
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from crash_round.config import GameConfig
from crash_round.engine import CrashRoundEngine, RoundResult
from crash_round.errors import RoundMissingError

logger = logging.getLogger("crash_round.supervisor")


class EngineSupervisor:

    def __init__(self, engine: CrashRoundEngine, store=None, config=GameConfig) -> None:
        self.engine = engine
        self.store = store or engine.store
        self.config = config

        self._reset = asyncio.Event()
        self._stopping = False

        self.cycles_completed = 0
        self.restarts = 0
        self.failures = 0
        self.last_result: Optional[RoundResult] = None

    # =====================================================
    # CONTROL
    # =====================================================

    def request_restart(self) -> None:
        self._reset.set()

    def stop(self) -> None:
        self._stopping = True
        self._reset.set()

    # =====================================================
    # LOOP
    # =====================================================

    async def run_forever(self) -> None:
        logger.info("Supervisor started")
        watcher = asyncio.create_task(self._watch_round_state())
        try:
            while not self._stopping:
                await self._run_once()
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            logger.info("Supervisor stopped")

    async def _run_once(self) -> None:
        self._reset.clear()
        logger.info("Starting a new game cycle...")

        cycle = asyncio.create_task(self.engine.run_cycle())
        reset = asyncio.create_task(self._reset.wait())
        try:
            await asyncio.wait({cycle, reset}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cycle.cancel()
            await asyncio.gather(cycle, return_exceptions=True)
            raise
        finally:
            reset.cancel()

        if not cycle.done():
            cycle.cancel()
            await asyncio.gather(cycle, return_exceptions=True)
            self.engine.current_round_id = None
            if not self._stopping:
                self.restarts += 1
                logger.warning("Reset signal received, abandoning current round")
            return

        exc = cycle.exception()
        if exc is None:
            self.cycles_completed += 1
            self.last_result = cycle.result()
            return

        self.engine.current_round_id = None
        self.restarts += 1

        if isinstance(exc, RoundMissingError):
            logger.warning(f"Admin or system triggered a game restart: {exc}")
            return

        self.failures += 1
        logger.error("An error occurred in the game cycle", exc_info=exc)
        await self._backoff()

    async def _backoff(self) -> None:
        """Waits out the restart backoff; a reset or stop cuts it short."""
        if self._stopping:
            return
        self._reset.clear()
        try:
            await asyncio.wait_for(self._reset.wait(), timeout=self.config.RESTART_BACKOFF_SEC)
        except asyncio.TimeoutError:
            pass

    # =====================================================
    # SELF-HEAL WATCHER
    # =====================================================

    async def _watch_round_state(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.config.WATCH_INTERVAL_SEC)

            round_id = self.engine.current_round_id
            if round_id is None:
                continue

            try:
                exists = await self.store.round_exists()
            except (SQLAlchemyError, OSError) as e:
                logger.warning(f"Round watcher could not reach the store: {e}")
                continue

            # Only act if the engine is still on the round we checked
            if not exists and self.engine.current_round_id == round_id:
                logger.warning(f"Round #{round_id} state wiped, restarting engine")
                self.request_restart()
