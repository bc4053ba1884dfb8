"""Ledger store: persistence for sessions, players and transactions.

``LedgerStore`` is the contract the coordinator depends on; stores are
swappable and return ledger models. ``PostgresLedgerStore`` implements it on
asyncpg.
"""
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Optional

import asyncpg

from boardbank.db.connection import Database, db
from boardbank.ledger.errors import (
    Conflict,
    JoinCodeTaken,
    PlayerNotFound,
    SessionNotFound,
    ValidationError,
)
from boardbank.ledger.models import Endpoint, Player, Session, Transaction
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)


class LedgerStore(ABC):
    """Interface for ledger persistence operations."""

    @abstractmethod
    def atomic(self) -> AsyncContextManager["LedgerStore"]:
        """Yield a store whose writes commit or roll back together."""
        ...

    # Sessions
    @abstractmethod
    async def create_session(
        self, join_code: str, host_name: str, buttons: list[int], host_balance: int
    ) -> tuple[Session, Player]:
        """Create a session with its host player and link the two.

        Raises:
            JoinCodeTaken: If an active session already uses the code.
        """
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session:
        """Return a session by ID or raise SessionNotFound."""
        ...

    @abstractmethod
    async def get_session_by_code(self, code: str) -> Session:
        """Return the active session with this join code or raise SessionNotFound."""
        ...

    @abstractmethod
    async def get_session_config(self, session_id: str) -> dict:
        """Return ``{"buttons": [...]}`` for a session."""
        ...

    @abstractmethod
    async def update_session_buttons(self, session_id: str, buttons: list[int]) -> None:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session with its players and transactions."""
        ...

    @abstractmethod
    async def list_active_sessions(self) -> list[Session]:
        ...

    # Players
    @abstractmethod
    async def create_player(self, session_id: str, name: str, initial_balance: int) -> Player:
        ...

    @abstractmethod
    async def get_player(self, player_id: str) -> Player:
        """Return a player by ID or raise PlayerNotFound."""
        ...

    @abstractmethod
    async def list_players(self, session_id: str) -> list[Player]:
        """Return a session's players in creation order."""
        ...

    @abstractmethod
    async def update_player_balance(
        self, player_id: str, new_balance: int, expected_balance: Optional[int] = None
    ) -> Player:
        """Write a balance, optionally only if it still equals ``expected_balance``.

        Raises:
            Conflict: If the stored balance no longer matches.
            PlayerNotFound: If the player is gone.
        """
        ...

    @abstractmethod
    async def delete_player(self, player_id: str) -> None:
        ...

    @abstractmethod
    async def reset_balances(self, session_id: str) -> int:
        """Set every player's balance back to their initial balance in one write.

        Returns:
            Number of players reset.
        """
        ...

    # Transactions
    @abstractmethod
    async def record_transaction(
        self,
        session_id: str,
        source: Endpoint,
        destination: Endpoint,
        amount: int,
        previous_balance: int,
        new_balance: int,
        description: str,
    ) -> Transaction:
        ...

    @abstractmethod
    async def list_transactions(self, session_id: str, limit: Optional[int] = None) -> list[Transaction]:
        """Return transactions newest first with resolved player names."""
        ...


def _uuid(value: str, error: Exception) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise error


def _optional_uuid(endpoint: Endpoint) -> Optional[uuid.UUID]:
    if endpoint.is_bank:
        return None
    return _uuid(endpoint.player_id, PlayerNotFound(endpoint.player_id))


_TRANSACTION_NAMES = """
    SELECT t.*, f.name AS from_player_name, d.name AS to_player_name
    FROM {source} t
    LEFT JOIN players f ON f.id = t.from_player_id
    LEFT JOIN players d ON d.id = t.to_player_id
"""


class PostgresLedgerStore(LedgerStore):
    """Ledger store on PostgreSQL.

    Runs queries on the shared pool, or on a single connection while inside
    ``atomic()``.
    """

    def __init__(self, executor: Any = None):
        """Initialize the store.

        Args:
            executor: ``Database`` pool wrapper or an asyncpg connection.
        """
        self._executor = executor if executor is not None else db

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["PostgresLedgerStore"]:
        try:
            if isinstance(self._executor, Database):
                async with self._executor.transaction() as conn:
                    yield PostgresLedgerStore(conn)
            else:
                # Already on a connection: nest as a savepoint
                async with self._executor.transaction():
                    yield self
        except asyncpg.TransactionRollbackError as e:
            # Deadlocks and serialization failures: the caller may retry
            logger.warning(f"Transaction rolled back by the server: {e}")
            raise Conflict("Concurrent update, please try again") from e

    async def create_session(
        self, join_code: str, host_name: str, buttons: list[int], host_balance: int
    ) -> tuple[Session, Player]:
        async with self.atomic() as store:
            try:
                record = await store._executor.fetchrow(
                    """
                    INSERT INTO sessions (join_code, buttons)
                    VALUES ($1, $2)
                    RETURNING id
                    """,
                    join_code,
                    buttons,
                )
            except asyncpg.UniqueViolationError:
                raise JoinCodeTaken(join_code)

            player = await store.create_player(str(record["id"]), host_name, host_balance, is_host=True)
            session_record = await store._executor.fetchrow(
                "UPDATE sessions SET host_player_id = $2 WHERE id = $1 RETURNING *",
                record["id"],
                uuid.UUID(player.id),
            )

        session = Session.from_record(session_record)
        logger.info(f"Created session {session.join_code} ({session.id}) hosted by {player.name}")
        return session, player

    async def get_session(self, session_id: str) -> Session:
        record = await self._executor.fetchrow(
            "SELECT * FROM sessions WHERE id = $1",
            _uuid(session_id, SessionNotFound(session_id)),
        )
        if record is None:
            raise SessionNotFound(session_id)
        return Session.from_record(record)

    async def get_session_by_code(self, code: str) -> Session:
        record = await self._executor.fetchrow(
            "SELECT * FROM sessions WHERE join_code = $1 AND is_active = TRUE",
            code,
        )
        if record is None:
            raise SessionNotFound(code)
        return Session.from_record(record)

    async def get_session_config(self, session_id: str) -> dict:
        buttons = await self._executor.fetchval(
            "SELECT buttons FROM sessions WHERE id = $1",
            _uuid(session_id, SessionNotFound(session_id)),
        )
        if buttons is None:
            raise SessionNotFound(session_id)
        return {"buttons": list(buttons)}

    async def update_session_buttons(self, session_id: str, buttons: list[int]) -> None:
        result = await self._executor.execute(
            "UPDATE sessions SET buttons = $2 WHERE id = $1",
            _uuid(session_id, SessionNotFound(session_id)),
            buttons,
        )
        if result == "UPDATE 0":
            raise SessionNotFound(session_id)

    async def delete_session(self, session_id: str) -> None:
        result = await self._executor.execute(
            "DELETE FROM sessions WHERE id = $1",
            _uuid(session_id, SessionNotFound(session_id)),
        )
        if result == "DELETE 0":
            raise SessionNotFound(session_id)

    async def list_active_sessions(self) -> list[Session]:
        records = await self._executor.fetch(
            "SELECT * FROM sessions WHERE is_active = TRUE ORDER BY created_at DESC"
        )
        return [Session.from_record(r) for r in records]

    async def create_player(
        self, session_id: str, name: str, initial_balance: int, is_host: bool = False
    ) -> Player:
        try:
            record = await self._executor.fetchrow(
                """
                INSERT INTO players (session_id, name, balance, initial_balance, is_host)
                VALUES ($1, $2, $3, $3, $4)
                RETURNING *
                """,
                _uuid(session_id, SessionNotFound(session_id)),
                name,
                initial_balance,
                is_host,
            )
        except asyncpg.ForeignKeyViolationError:
            raise SessionNotFound(session_id)
        return Player.from_record(record)

    async def get_player(self, player_id: str) -> Player:
        record = await self._executor.fetchrow(
            "SELECT * FROM players WHERE id = $1",
            _uuid(player_id, PlayerNotFound(player_id)),
        )
        if record is None:
            raise PlayerNotFound(player_id)
        return Player.from_record(record)

    async def list_players(self, session_id: str) -> list[Player]:
        records = await self._executor.fetch(
            "SELECT * FROM players WHERE session_id = $1 ORDER BY created_at, id",
            _uuid(session_id, SessionNotFound(session_id)),
        )
        return [Player.from_record(r) for r in records]

    async def update_player_balance(
        self, player_id: str, new_balance: int, expected_balance: Optional[int] = None
    ) -> Player:
        pid = _uuid(player_id, PlayerNotFound(player_id))
        record = await self._executor.fetchrow(
            """
            UPDATE players SET balance = $2
            WHERE id = $1 AND ($3::integer IS NULL OR balance = $3)
            RETURNING *
            """,
            pid,
            new_balance,
            expected_balance,
        )
        if record is None:
            current = await self._executor.fetchval("SELECT balance FROM players WHERE id = $1", pid)
            if current is None:
                raise PlayerNotFound(player_id)
            raise Conflict(f"Balance changed to {current} (expected {expected_balance})")
        return Player.from_record(record)

    async def delete_player(self, player_id: str) -> None:
        result = await self._executor.execute(
            "DELETE FROM players WHERE id = $1",
            _uuid(player_id, PlayerNotFound(player_id)),
        )
        if result == "DELETE 0":
            raise PlayerNotFound(player_id)

    async def reset_balances(self, session_id: str) -> int:
        result = await self._executor.execute(
            "UPDATE players SET balance = initial_balance WHERE session_id = $1",
            _uuid(session_id, SessionNotFound(session_id)),
        )
        return int(result.split()[-1])

    async def record_transaction(
        self,
        session_id: str,
        source: Endpoint,
        destination: Endpoint,
        amount: int,
        previous_balance: int,
        new_balance: int,
        description: str,
    ) -> Transaction:
        if source.is_bank and destination.is_bank:
            raise ValidationError("A transaction needs at least one player")

        query = (
            """
            WITH inserted AS (
                INSERT INTO transactions (
                    session_id, from_player_id, to_player_id, amount,
                    previous_balance, new_balance, description
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
            )
            """
            + _TRANSACTION_NAMES.format(source="inserted")
        )
        record = await self._executor.fetchrow(
            query,
            _uuid(session_id, SessionNotFound(session_id)),
            _optional_uuid(source),
            _optional_uuid(destination),
            amount,
            previous_balance,
            new_balance,
            description,
        )
        return Transaction.from_record(record)

    async def list_transactions(self, session_id: str, limit: Optional[int] = None) -> list[Transaction]:
        query = (
            _TRANSACTION_NAMES.format(source="transactions")
            + """
            WHERE t.session_id = $1
            ORDER BY t.seq DESC
            LIMIT $2
            """
        )
        records = await self._executor.fetch(
            query,
            _uuid(session_id, SessionNotFound(session_id)),
            limit,
        )
        return [Transaction.from_record(r) for r in records]
