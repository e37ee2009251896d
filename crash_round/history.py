# history.py
"""
Round History Recorder

One immutable record per completed round, appended after the crash is
committed and before the next round is minted. Duplicate keys are a no-op
success so restarts stay idempotent; transient store errors are retried a
bounded number of times and then surfaced as HistoryError.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from crash_round.errors import HistoryError
from crash_round.utils import format_multiplier, to_multiplier

logger = logging.getLogger("crash_round.history")


class HistoryRecorder:

    def __init__(self, store, attempts: int = 3, delay: float = 0.5, sleep=asyncio.sleep) -> None:
        self.store = store
        self.attempts = max(1, attempts)
        self.delay = delay
        self._sleep = sleep

    async def record(
        self,
        round_id: str,
        final_multiplier: Decimal,
        timestamp: int,
        forced: bool = False,
        server_seed: str = "",
        client_seed: str = "",
    ) -> bool:
        record = {
            "crashedAt": to_multiplier(final_multiplier),
            "timestamp": timestamp,
            "forced": forced,
            "serverSeed": server_seed,
            "clientSeed": client_seed,
        }

        for attempt in range(1, self.attempts + 1):
            try:
                created = await self.store.append_history(round_id, record)
            except (SQLAlchemyError, OSError) as e:
                logger.warning(
                    f"History write for round {round_id} failed "
                    f"(attempt {attempt}/{self.attempts}): {e}"
                )
                if attempt == self.attempts:
                    raise HistoryError(f"Could not record round {round_id}") from e
                await self._sleep(self.delay)
                continue

            if created:
                logger.info(f"Recorded round {round_id} at {format_multiplier(record['crashedAt'])}")
            else:
                logger.info(f"Round {round_id} was already recorded, skipping")
            return True
