"""Ledger module: bookkeeping for sessions, players and transactions."""
from .coordinator import MovementResult, SessionCoordinator
from .errors import (
    Conflict,
    ErrorCode,
    Forbidden,
    InsufficientFunds,
    JoinCodeTaken,
    LedgerError,
    NotFound,
    PlayerNotFound,
    Retryable,
    SessionNotFound,
    ValidationError,
)
from .models import Endpoint, Player, Session, SessionSnapshot, Transaction
from .store import LedgerStore, PostgresLedgerStore

__all__ = [
    "SessionCoordinator",
    "MovementResult",
    "LedgerStore",
    "PostgresLedgerStore",
    "Endpoint",
    "Player",
    "Session",
    "SessionSnapshot",
    "Transaction",
    "ErrorCode",
    "LedgerError",
    "NotFound",
    "SessionNotFound",
    "PlayerNotFound",
    "InsufficientFunds",
    "Forbidden",
    "ValidationError",
    "Conflict",
    "Retryable",
    "JoinCodeTaken",
]
