"""Main FastAPI server."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from boardbank.auth.jwt_handler import TokenError, TokenPayload, create_player_token, verify_token
from boardbank.auth.roles import Role
from boardbank.config import config
from boardbank.db.connection import db
from boardbank.db.models import init_db
from boardbank.ledger.coordinator import SessionCoordinator
from boardbank.ledger.errors import (
    Conflict,
    Forbidden,
    InsufficientFunds,
    LedgerError,
    NotFound,
    Retryable,
    ValidationError,
)
from boardbank.ledger.models import Player, Session
from boardbank.ledger.store import PostgresLedgerStore
from boardbank.state.analytics_cache import analytics_cache
from boardbank.state.redis_client import redis_client
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)


# Pydantic models for HTTP API
class CreateSessionRequest(BaseModel):
    host_name: str
    buttons: Optional[list[int]] = None
    host_balance: Optional[int] = None


class JoinSessionRequest(BaseModel):
    code: str
    player_name: str
    initial_balance: Optional[int] = None


class SessionAccessResponse(BaseModel):
    session: dict
    player: dict
    token: str
    token_type: str = "bearer"


class ButtonsRequest(BaseModel):
    buttons: list[int]


class AddPlayerRequest(BaseModel):
    name: str
    initial_balance: Optional[int] = None


class AmountRequest(BaseModel):
    amount: int


class BalanceRequest(BaseModel):
    balance: int


class TransferRequest(BaseModel):
    source: str = "bank"
    destination: str = "bank"
    amount: int
    description: Optional[str] = None


coordinator = SessionCoordinator(PostgresLedgerStore(), analytics_cache)


def get_coordinator() -> SessionCoordinator:
    """Coordinator dependency (overridden in tests)."""
    return coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    await db.connect()
    await redis_client.connect()
    await init_db()
    logger.info("Ledger server initialized")
    yield
    await redis_client.disconnect()
    await db.disconnect()
    logger.info("Ledger server shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Board Game Bank",
    description="Shared bank ledger for in-person board games",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware - allow local development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",  # Allow any localhost port
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_for(error: LedgerError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, InsufficientFunds):
        return 400
    if isinstance(error, Forbidden):
        return 403
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, Conflict):
        return 409
    if isinstance(error, Retryable):
        return 503
    return 400


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Map ledger errors to HTTP responses."""
    status = _status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status,
        content={"code": exc.code.value, "detail": exc.message},
    )


@app.exception_handler(TokenError)
async def token_error_handler(request: Request, exc: TokenError) -> JSONResponse:
    """Reject missing or invalid player tokens."""
    return JSONResponse(status_code=401, content={"code": "invalid_token", "detail": str(exc)})


async def current_player(session_id: str, authorization: str = Header(None)) -> TokenPayload:
    """Verify the player token for the session in the path."""
    if not authorization or not authorization.startswith("Bearer "):
        raise TokenError("Missing authorization header")
    return verify_token(authorization.split(" ", 1)[1], session_id=session_id)


def _access(session: Session, player: Player) -> SessionAccessResponse:
    token = create_player_token(player.id, session.id, player.name, Role.for_player(player.is_host))
    return SessionAccessResponse(session=session.to_dict(), player=player.to_dict(), token=token)


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# Session lifecycle
@app.post("/api/sessions", response_model=SessionAccessResponse)
async def create_session(
    request: CreateSessionRequest,
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Start a session; the caller becomes its host."""
    session, host = await coord.create_session(request.host_name, request.buttons, request.host_balance)
    return _access(session, host)


@app.post("/api/sessions/join", response_model=SessionAccessResponse)
async def join_session(
    request: JoinSessionRequest,
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Join an active session by its code."""
    session, player = await coord.join_session(request.code, request.player_name, request.initial_balance)
    return _access(session, player)


@app.get("/api/sessions/{session_id}")
async def get_session(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Session details, including the current quick buttons."""
    session = await coord.get_session(session_id)
    return session.to_dict()


@app.get("/api/sessions/{session_id}/buttons")
async def get_buttons(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Current quick buttons, polled by every client."""
    return await coord.get_session_config(session_id)


@app.put("/api/sessions/{session_id}/buttons")
async def configure_buttons(
    session_id: str,
    request: ButtonsRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Replace the quick buttons (host only)."""
    buttons = await coord.configure_buttons(session_id, me.player_id, request.buttons)
    return {"buttons": buttons}


@app.delete("/api/sessions/{session_id}")
async def end_session(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """End the session and delete everything in it (host only)."""
    await coord.end_session(session_id, me.player_id)
    return {"message": "Session ended"}


@app.post("/api/sessions/{session_id}/reset")
async def reset_balances(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Put every balance back to its initial value (host only)."""
    players = await coord.reset_balances(session_id, me.player_id)
    return {"players": [p.to_dict() for p in players]}


# Players
@app.get("/api/sessions/{session_id}/players")
async def list_players(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Players in creation order."""
    players = await coord.list_players(session_id)
    return {"players": [p.to_dict() for p in players]}


@app.post("/api/sessions/{session_id}/players")
async def add_player(
    session_id: str,
    request: AddPlayerRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Add a player without a device of their own (host only)."""
    player = await coord.add_player(session_id, me.player_id, request.name, request.initial_balance)
    return player.to_dict()


@app.delete("/api/sessions/{session_id}/players/{player_id}")
async def remove_player(
    session_id: str,
    player_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Remove a player (host only, never the host)."""
    await coord.remove_player(session_id, me.player_id, player_id)
    return {"message": "Player removed"}


# Money
@app.post("/api/sessions/{session_id}/players/{player_id}/credit")
async def bank_credit(
    session_id: str,
    player_id: str,
    request: AmountRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """The bank pays a player."""
    result = await coord.bank_credit(session_id, player_id, request.amount)
    return result.to_dict()


@app.post("/api/sessions/{session_id}/players/{player_id}/pay")
async def quick_pay(
    session_id: str,
    player_id: str,
    request: AmountRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """A player pays the bank."""
    result = await coord.quick_pay(session_id, player_id, request.amount)
    return result.to_dict()


@app.put("/api/sessions/{session_id}/players/{player_id}/balance")
async def set_balance(
    session_id: str,
    player_id: str,
    request: BalanceRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Overwrite a player's balance."""
    result = await coord.set_balance(session_id, player_id, request.balance)
    return result.to_dict()


@app.post("/api/sessions/{session_id}/transfers")
async def transfer(
    session_id: str,
    request: TransferRequest,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Move money between players and/or the bank."""
    result = await coord.transfer(
        session_id, request.source, request.destination, request.amount, request.description
    )
    return result.to_dict()


# History and analytics
@app.get("/api/sessions/{session_id}/transactions")
async def list_transactions(
    session_id: str,
    limit: int = Query(config.history_limit, ge=1, le=500),
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Latest transactions, newest first."""
    transactions = await coord.list_transactions(session_id, limit)
    return {"transactions": [t.to_dict() for t in transactions]}


@app.get("/api/sessions/{session_id}/dashboard")
async def dashboard(
    session_id: str,
    me: TokenPayload = Depends(current_player),
    coord: SessionCoordinator = Depends(get_coordinator),
):
    """Totals, ranking, balance evolution and leadership counts."""
    return await coord.dashboard(session_id)


# Entry point
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "boardbank.main:app",
        host=config.host,
        port=config.port,
        reload=True,
    )
