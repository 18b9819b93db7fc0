# app.py
"""
NayaPlay Crash – HTTP / WebSocket entry point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Thin command/read adapters over the ledger and the round driver
- WebSocket push feed of round and bet events
- Round driver and stuck-round sweep lifecycle

Run with: uvicorn naya_crash.app:app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from naya_crash import ledger
from naya_crash.config import settings
from naya_crash.db import get_balance, get_or_create_user, get_session, init_db
from naya_crash.driver import RoundDriver
from naya_crash.engine import EngineError
from naya_crash.utils import format_balance

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logging.getLogger("apscheduler").setLevel(logging.ERROR)
logger = logging.getLogger("naya_crash.app")

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class BetRequest(BaseModel):
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally
    round_id: Optional[str] = None


class CashoutRequest(BaseModel):
    bet_id: str = Field(..., min_length=1)
    # Multiplier the client saw; omitted means "whatever the server has now"
    multiplier: Optional[float] = Field(None, ge=1.0)


class Player(BaseModel):
    player_id: str
    display_name: str


# =====================================================
# DEPENDENCIES
# =====================================================

driver = RoundDriver()
scheduler = AsyncIOScheduler()


def get_driver() -> RoundDriver:
    return driver


async def current_player(
    x_player_id: str = Header(..., min_length=1),
    x_display_name: Optional[str] = Header(None),
) -> Player:
    """
    Caller identity as forwarded by the auth layer in front of this service.
    """
    return Player(player_id=x_player_id, display_name=x_display_name or x_player_id)

# =====================================================
# LIFECYCLE
# =====================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    logger.info("Startup: Initializing Database...")
    await init_db()

    logger.info("Startup: Starting round driver...")
    await driver.start()

    scheduler.add_job(
        driver.sweep_stuck_rounds,
        "interval",
        seconds=settings.SWEEP_INTERVAL_SECONDS,
        id="sweep_stuck_rounds",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=30,
    )
    scheduler.start()

    yield

    logger.info("Shutdown: Cleaning up...")
    scheduler.shutdown(wait=False)
    await driver.stop()

# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="NayaPlay Crash API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================

@app.exception_handler(EngineError)
async def engine_error_handler(_, exc: EngineError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "ValueError", "detail": str(exc)},
    )

# =====================================================
# HEALTH
# =====================================================

@app.get("/healthz")
async def healthz(game: RoundDriver = Depends(get_driver)):
    return {"status": "healthy", "env": settings.APP_ENV, "driver_running": game.running}

# =====================================================
# API – PLAYER
# =====================================================

@app.post("/api/init")
async def api_init(
    player: Player = Depends(current_player),
    session: AsyncSession = Depends(get_session),
):
    """
    Initialize player session and fetch balance.
    """
    user = await get_or_create_user(session, player.player_id, player.display_name)
    return {
        "player_id": user.player_id,
        "display_name": user.display_name,
        "balance": float(user.balance),  # Convert Decimal to float for JSON
    }

# =====================================================
# API – FEEDS
# =====================================================

@app.get("/api/state")
async def api_state(
    session: AsyncSession = Depends(get_session),
    game: RoundDriver = Depends(get_driver),
):
    """
    Polling endpoint for the active round.
    """
    rnd = await ledger.get_active_round(session)
    if rnd is None:
        return {"round_id": None, "phase": None}
    return game.round_view(rnd)


@app.get("/api/rounds/recent")
async def api_recent_rounds(
    limit: int = Query(settings.RECENT_ROUNDS_LIMIT, ge=1, le=50),
    session: AsyncSession = Depends(get_session),
):
    return {"rounds": await ledger.recent_rounds(session, limit)}


@app.get("/api/rounds/{round_id}/bets")
async def api_round_bets(
    round_id: str,
    session: AsyncSession = Depends(get_session),
):
    bets = await ledger.round_bets(session, round_id)
    return {
        "round_id": round_id,
        "bets": [b.to_dict() for b in bets],
        **(await ledger.round_totals(session, round_id)),
    }


@app.get("/api/my-bet")
async def api_my_bet(
    player: Player = Depends(current_player),
    session: AsyncSession = Depends(get_session),
):
    rnd = await ledger.get_active_round(session)
    if rnd is None:
        return {"bet": None}
    bet = await ledger.get_player_bet(session, rnd.id, player.player_id)
    return {"bet": bet.to_dict() if bet else None}

# =====================================================
# API – BETTING & CASHOUT
# =====================================================

@app.post("/api/place-bet")
async def api_place_bet(
    payload: BetRequest,
    player: Player = Depends(current_player),
    session: AsyncSession = Depends(get_session),
    game: RoundDriver = Depends(get_driver),
):
    """
    Debit and bet registration commit together; a rejected bet never
    touches the balance.
    """
    await get_or_create_user(session, player.player_id, player.display_name)

    round_id = payload.round_id
    if round_id is None:
        rnd = await ledger.get_active_round(session)
        if rnd is None:
            raise HTTPException(status.HTTP_409_CONFLICT, "No round open for betting")
        round_id = rnd.id

    bet = await ledger.place_bet(
        session,
        round_id,
        player.player_id,
        player.display_name,
        payload.amount,
        now=game.now(),
        min_stake=game.config.MIN_BET_AMOUNT,
    )
    game.feed.publish({"type": "bet", **bet.to_dict()})

    balance = await get_balance(session, player.player_id)
    logger.info("Bet %s: %s by %s on round %s", bet.id, format_balance(bet.stake), player.player_id, round_id)
    return {
        "status": "accepted",
        "bet_id": bet.id,
        "round_id": round_id,
        "new_balance": float(balance),
    }


@app.post("/api/cashout")
async def api_cashout(
    payload: CashoutRequest,
    player: Player = Depends(current_player),
    session: AsyncSession = Depends(get_session),
    game: RoundDriver = Depends(get_driver),
):
    """
    Processes cashout.
    The ledger is the authority on the payout amount.
    """
    payout = await ledger.cash_out(
        session,
        payload.bet_id,
        requested_multiplier=payload.multiplier,
        player_id=player.player_id,
        now=game.now(),
        speed=game.config.MULTIPLIER_SPEED,
    )

    bet = await ledger.get_bet(session, payload.bet_id, player.player_id)
    if bet is not None:
        game.feed.publish({"type": "bet", **bet.to_dict()})

    balance = await get_balance(session, player.player_id)
    return {
        "status": "cashed_out",
        "payout": float(payout),
        "balance": float(balance),
    }


# =====================================================
# WEBSOCKET FEED
# =====================================================

@app.websocket("/ws")
async def ws_feed(websocket: WebSocket, game: RoundDriver = Depends(get_driver)):
    await websocket.accept()
    queue = game.feed.subscribe()
    try:
        snapshot = await game.snapshot()
        if snapshot is not None:
            await websocket.send_json({"type": "round", **snapshot})
        while True:
            await websocket.send_json(await queue.get())
    except WebSocketDisconnect:
        pass
    finally:
        game.feed.unsubscribe(queue)
