"""Ledger error taxonomy.

Every error carries a stable code and a user-safe message. Validation and
funds checks raise before anything is written.
"""
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Domain error codes."""
    SESSION_NOT_FOUND = "session_not_found"
    PLAYER_NOT_FOUND = "player_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FORBIDDEN = "forbidden"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    JOIN_CODE_TAKEN = "join_code_taken"


class LedgerError(Exception):
    """Base ledger error with code and user-safe message."""
    
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    
    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
    
    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFound(LedgerError):
    """A session or player lookup missed."""


class SessionNotFound(NotFound):
    """Raised when no (active) session matches."""
    
    code = ErrorCode.SESSION_NOT_FOUND
    
    def __init__(self, ref: str) -> None:
        super().__init__(f"Session {ref} not found")
        self.ref = ref


class PlayerNotFound(NotFound):
    """Raised when a player does not exist in the session."""
    
    code = ErrorCode.PLAYER_NOT_FOUND
    
    def __init__(self, player_id: str) -> None:
        super().__init__(f"Player {player_id} not found")
        self.player_id = player_id


class InsufficientFunds(LedgerError):
    """Raised when the paying player cannot cover the amount."""
    
    code = ErrorCode.INSUFFICIENT_FUNDS
    
    def __init__(self, player_name: str, balance: int, amount: int) -> None:
        super().__init__(f"{player_name} has {balance}, cannot pay {amount}")
        self.balance = balance
        self.amount = amount


class Forbidden(LedgerError):
    """Raised when a non-host attempts a host-only action."""
    
    code = ErrorCode.FORBIDDEN


class ValidationError(LedgerError):
    """Raised for empty names, non-positive amounts and malformed buttons."""
    
    code = ErrorCode.VALIDATION_ERROR


class Conflict(LedgerError):
    """Raised when a balance changed between read and write."""
    
    code = ErrorCode.CONFLICT


class Retryable(LedgerError):
    """Raised for transient failures that the caller may retry."""


class JoinCodeTaken(Retryable):
    """Raised when a generated join code collides with an active session."""
    
    code = ErrorCode.JOIN_CODE_TAKEN
    
    def __init__(self, join_code: str) -> None:
        super().__init__(f"Join code {join_code} is already in use")
        self.join_code = join_code
