# app.py
"""
Crash Round – Production Entry Point

Responsibilities:
- FastAPI HTTP server for the external actors around the engine
  (players placing bets / cashing out, admins forcing a crash or a reset)
- Request Validation (Pydantic)
- Process lifespan: DB init + supervised engine loop

The engine is not driven by requests. It runs as a background task under
EngineSupervisor; the endpoints only talk to the shared round store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from crash_round.config import LOG_LEVEL, GameConfig
from crash_round.db import RoundStore
from crash_round.engine import CrashRoundEngine
from crash_round.errors import BetError, StateError
from crash_round.supervisor import EngineSupervisor

# =====================================================
# LOGGING
# =====================================================

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("crash_round.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally


class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    multiplier: Optional[float] = Field(None, ge=1.0)

# =====================================================
# APP FACTORY
# =====================================================

def create_app(
    store: Optional[RoundStore] = None,
    config=GameConfig,
    start_engine: bool = True,
) -> FastAPI:
    store = store or RoundStore.from_url()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        logger.info("Startup: Initializing Database...")
        await store.init()

        task = None
        if start_engine:
            logger.info("Startup: Launching round engine...")
            supervisor = EngineSupervisor(CrashRoundEngine(store, config=config), store, config)
            app.state.supervisor = supervisor
            task = asyncio.create_task(supervisor.run_forever())

        yield

        logger.info("Shutdown: Cleaning up...")
        if task is not None:
            app.state.supervisor.stop()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await store.dispose()

    app = FastAPI(
        title="Crash Round API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.supervisor = None

    register_error_handlers(app)
    register_routes(app)
    return app


def get_store(request: Request) -> RoundStore:
    return request.app.state.store

# =====================================================
# ERROR HANDLERS
# =====================================================

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(StateError)
    async def state_error_handler(_, exc: StateError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "Game State Conflict", "detail": str(exc)},
        )

    @app.exception_handler(BetError)
    async def bet_error_handler(_, exc: BetError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid Bet", "detail": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(_, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"error": "Value Error", "detail": str(exc)},
        )

# =====================================================
# ROUTES
# =====================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/state")
    async def api_state(store: RoundStore = Depends(get_store)):
        """
        Polling endpoint for the published round. Never carries the crash point.
        """
        state = await store.read_round()
        if state is None:
            raise HTTPException(status_code=404, detail="No active round")
        return state

    @app.get("/api/history")
    async def api_history(
        limit: int = Query(50, ge=1, le=500),
        store: RoundStore = Depends(get_store),
    ):
        return await store.list_history(limit)

    @app.post("/api/place-bet")
    async def api_place_bet(payload: BetRequest, store: RoundStore = Depends(get_store)):
        round_id = await store.place_bet(payload.user_id, Decimal(str(payload.amount)))
        return {"status": "accepted", "round_id": round_id}

    @app.post("/api/cashout")
    async def api_cashout(payload: CashoutRequest, store: RoundStore = Depends(get_store)):
        """
        Store is the authority: the cash-out only counts if it commits before
        the crash does.
        """
        requested = Decimal(str(payload.multiplier)) if payload.multiplier is not None else None
        multiplier = await store.cashout(payload.user_id, requested)
        return {"status": "cashed_out", "multiplier": float(multiplier)}

    @app.post("/api/admin/force-crash")
    async def api_force_crash(store: RoundStore = Depends(get_store)):
        round_id = await store.set_force_crash()
        logger.warning(f"Force crash requested for round #{round_id}")
        return {"status": "force_crash_requested", "round_id": round_id}

    @app.post("/api/admin/reset")
    async def api_reset(request: Request, store: RoundStore = Depends(get_store)):
        """
        Wipes the round record. The supervisor's watcher notices and starts
        a fresh round; a local supervisor is also poked directly.
        """
        wiped = await store.delete_round()
        supervisor = request.app.state.supervisor
        if supervisor is not None:
            supervisor.request_restart()
        logger.warning("Admin triggered a game restart")
        return {"status": "reset", "wiped": wiped}


app = create_app()
