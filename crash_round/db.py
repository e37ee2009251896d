# db.py
"""
Shared Round State Store – SQLAlchemy async

Responsibilities:
- Async database engine & session lifecycle
- The single "current round" record (atomic overwrite, field-scoped merge,
  snapshot read, existence check)
- Per-round bets written by external actors, arbitrated against the
  committed round status
- Append-only round history keyed by round id (create-if-absent)

The engine only ever touches the round record through field-scoped UPDATEs
once bets can exist, so concurrently placed bets are never clobbered. Bets
live in their own table keyed by (round_id, user_id).
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    delete,
    exists,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

from crash_round.config import DATABASE_URL, DB_ECHO
from crash_round.engine import RoundStatus
from crash_round.errors import BetError, RoundMissingError, StateError

logger = logging.getLogger("crash_round.db")

# Primary key of the one and only current-round row
CURRENT_ROUND_KEY = 1

# Columns the engine may merge into the current round
ROUND_FIELDS = {
    "round_id",
    "status",
    "multiplier",
    "next_round_time",
    "start_time",
    "crashed_at",
    "force_crash",
    "seed_hash",
}


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# MODELS
# =====================================================

class CrashGame(Base):
    """
    The published round. crash_point is deliberately not a column.
    """

    __tablename__ = "crash_game"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    round_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[RoundStatus] = mapped_column(
        Enum(RoundStatus, name="round_status"),
        nullable=False,
    )

    multiplier: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=Decimal("1.00"),
    )

    # Epoch milliseconds
    next_round_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    crashed_at: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    force_crash: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # sha256(server_seed) commitment, empty for non-committed strategies
    seed_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class RoundBet(Base):
    __tablename__ = "round_bets"
    __table_args__ = (UniqueConstraint("round_id", "user_id", name="uq_round_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    cashed_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cashout_multiplier: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    placed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class HistoryRecord(Base):
    """
    Immutable outcome of a completed round (append-only).
    """

    __tablename__ = "crash_history"

    round_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    crashed_at: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # Epoch milliseconds
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Revealed after the crash for verification
    server_seed: Mapped[str | None] = mapped_column(String(128), nullable=True)
    client_seed: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


# =====================================================
# STORE
# =====================================================

class RoundStore:
    """
    Transactional shared-state resource. Every call is one short session,
    so no caller holds state across a suspension point.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.sessionmaker = async_sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str = DATABASE_URL, echo: bool = DB_ECHO) -> "RoundStore":
        engine = create_async_engine(
            url,
            echo=echo,
            # SSL is critical for Postgres in production
            connect_args={"ssl": "require"} if "postgresql" in url else {},
        )
        return cls(engine)

    async def init(self) -> None:
        """
        Creates all tables. Safe to run on every startup.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    # -------------------------------------------------
    # Engine contract
    # -------------------------------------------------

    async def create_round(self, **state: Any) -> None:
        """
        Atomic full overwrite of the current round. Only used at Waiting entry,
        before any bet for the new round can exist.
        """
        self._check_fields(state)
        async with self.sessionmaker() as session:
            await session.execute(delete(CrashGame))
            session.add(
                CrashGame(
                    id=CURRENT_ROUND_KEY,
                    force_crash=False,
                    start_time=None,
                    crashed_at=None,
                    **state,
                )
            )
            await session.commit()

    async def update_round(self, round_id: Optional[str] = None, **fields: Any) -> None:
        """
        Atomic field-scoped merge into the current round.

        When round_id is given the write only lands on that round.
        Raises RoundMissingError if there is nothing to update.
        """
        self._check_fields(fields)
        stmt = update(CrashGame).where(CrashGame.id == CURRENT_ROUND_KEY)
        if round_id is not None:
            stmt = stmt.where(CrashGame.round_id == round_id)

        async with self.sessionmaker() as session:
            result = await session.execute(stmt.values(**fields))
            await session.commit()

        if result.rowcount == 0:
            raise RoundMissingError(f"Round {round_id or 'current'} no longer exists")

    async def read_round(self) -> Optional[Dict[str, Any]]:
        """
        Snapshot of the published round, bets included. None if wiped.
        """
        async with self.sessionmaker() as session:
            game = await session.get(CrashGame, CURRENT_ROUND_KEY)
            if game is None:
                return None

            rows = await session.execute(
                select(RoundBet).where(RoundBet.round_id == game.round_id)
            )
            bets = {
                bet.user_id: {
                    "amount": float(bet.amount),
                    "cashedOut": bet.cashed_out,
                    "cashoutMultiplier": (
                        float(bet.cashout_multiplier) if bet.cashout_multiplier is not None else None
                    ),
                }
                for bet in rows.scalars()
            }

        return {
            "roundId": game.round_id,
            "status": game.status.value,
            "multiplier": float(game.multiplier),
            "nextRoundTime": game.next_round_time,
            "startTime": game.start_time,
            "crashedAt": float(game.crashed_at) if game.crashed_at is not None else None,
            "forceCrash": game.force_crash,
            "seedHash": game.seed_hash or None,
            "bets": bets,
        }

    async def round_exists(self) -> bool:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(CrashGame.id).where(CrashGame.id == CURRENT_ROUND_KEY)
            )
            return result.scalar_one_or_none() is not None

    async def append_history(self, round_id: str, record: Dict[str, Any]) -> bool:
        """
        Create-if-absent. Returns False (no-op) when round_id already exists.
        """
        async with self.sessionmaker() as session:
            session.add(
                HistoryRecord(
                    round_id=round_id,
                    crashed_at=Decimal(str(record["crashedAt"])),
                    timestamp=int(record["timestamp"]),
                    forced=bool(record.get("forced", False)),
                    server_seed=record.get("serverSeed") or None,
                    client_seed=record.get("clientSeed") or None,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"History for round {round_id} already recorded")
                return False
        return True

    # -------------------------------------------------
    # External actors
    # -------------------------------------------------

    async def place_bet(self, user_id: str, amount: Decimal) -> str:
        """
        Registers a bet on the current round. Accepted only while waiting,
        one per user per round. Returns the round id.
        """
        if amount <= 0:
            raise BetError("Bet must be positive")

        async with self.sessionmaker() as session:
            game = await session.get(CrashGame, CURRENT_ROUND_KEY)
            if game is None:
                raise StateError("No active round")
            if game.status != RoundStatus.WAITING:
                raise StateError(f"Betting closed (Status: {game.status.value})")

            round_id = game.round_id
            session.add(
                RoundBet(
                    round_id=round_id,
                    user_id=user_id,
                    amount=amount.quantize(Decimal("0.01")),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise BetError("Double bet detected")

        return round_id

    async def cashout(self, user_id: str, requested: Optional[Decimal] = None) -> Decimal:
        """
        Converts an open bet into a win at the published multiplier.

        The write is a single UPDATE guarded by "round still running", so a
        cash-out that loses the race against the crash commit is rejected.
        """
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(CrashGame).where(CrashGame.id == CURRENT_ROUND_KEY).with_for_update()
            )
            game = result.scalar_one_or_none()
            if game is None:
                raise StateError("No active round")
            if game.status == RoundStatus.CRASHED:
                raise StateError("Round crashed")
            if game.status != RoundStatus.RUNNING:
                raise StateError("Round not active")

            result = await session.execute(
                select(RoundBet).where(
                    RoundBet.round_id == game.round_id,
                    RoundBet.user_id == user_id,
                )
            )
            bet = result.scalar_one_or_none()
            if bet is None:
                raise BetError("Bet not found")
            if bet.cashed_out:
                raise BetError("Already cashed out")

            # Never ahead of the server
            final_mult = game.multiplier
            if requested is not None:
                final_mult = min(requested, final_mult)
            final_mult = final_mult.quantize(Decimal("0.01"), rounding=ROUND_DOWN)
            if final_mult < Decimal("1.00"):
                raise ValueError("Invalid multiplier")

            still_running = exists().where(
                CrashGame.id == CURRENT_ROUND_KEY,
                CrashGame.round_id == bet.round_id,
                CrashGame.status == RoundStatus.RUNNING,
            )
            result = await session.execute(
                update(RoundBet)
                .where(RoundBet.id == bet.id, RoundBet.cashed_out.is_(False), still_running)
                .values(cashed_out=True, cashout_multiplier=final_mult)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            raise StateError("Round crashed")
        return final_mult

    async def set_force_crash(self) -> str:
        """
        Admin override. Picked up by the engine on its next tick.
        """
        async with self.sessionmaker() as session:
            game = await session.get(CrashGame, CURRENT_ROUND_KEY)
            if game is None:
                raise StateError("No live round to crash")
            round_id = game.round_id

            result = await session.execute(
                update(CrashGame)
                .where(
                    CrashGame.id == CURRENT_ROUND_KEY,
                    CrashGame.round_id == round_id,
                    CrashGame.status != RoundStatus.CRASHED,
                )
                .values(force_crash=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount == 0:
            raise StateError("No live round to crash")
        return round_id

    async def delete_round(self) -> bool:
        """
        Wipes the current round record. The supervisor treats this as a
        reset signal and starts a fresh round.
        """
        async with self.sessionmaker() as session:
            result = await session.execute(delete(CrashGame))
            await session.commit()
        return result.rowcount > 0

    async def list_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(HistoryRecord)
                .order_by(HistoryRecord.timestamp.desc(), HistoryRecord.round_id.desc())
                .limit(limit)
            )
            return [self._history_dict(rec) for rec in result.scalars()]

    async def get_history(self, round_id: str) -> Optional[Dict[str, Any]]:
        async with self.sessionmaker() as session:
            rec = await session.get(HistoryRecord, round_id)
            return self._history_dict(rec) if rec is not None else None

    # -------------------------------------------------
    # Helpers
    # -------------------------------------------------

    @staticmethod
    def _check_fields(fields: Dict[str, Any]) -> None:
        unknown = set(fields) - ROUND_FIELDS
        if unknown:
            raise ValueError(f"Unknown round fields: {sorted(unknown)}")

    @staticmethod
    def _history_dict(rec: HistoryRecord) -> Dict[str, Any]:
        return {
            "roundId": rec.round_id,
            "crashedAt": float(rec.crashed_at),
            "timestamp": rec.timestamp,
            "forced": rec.forced,
            "serverSeed": rec.server_seed,
            "clientSeed": rec.client_seed,
        }
