"""Pytest configuration and shared fixtures."""
import copy
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from boardbank.config import Config
from boardbank.ledger.coordinator import SessionCoordinator
from boardbank.ledger.errors import (
    Conflict,
    JoinCodeTaken,
    PlayerNotFound,
    SessionNotFound,
    ValidationError,
)
from boardbank.ledger.models import Endpoint, Player, Session, Transaction
from boardbank.ledger.store import LedgerStore


class InMemoryLedgerStore(LedgerStore):
    """Ledger store kept in dictionaries, with rollback on failed ``atomic()`` blocks."""

    def __init__(self):
        self.sessions: dict[str, Session] = {}
        self.players: dict[str, Player] = {}
        self.transactions: list[Transaction] = []
        self.taken_codes: set[str] = set()
        self.conflicts_to_raise = 0
        self.created_codes: list[str] = []
        self._clock = datetime(2024, 1, 15, 20, 0, 0, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    @asynccontextmanager
    async def atomic(self):
        saved = copy.deepcopy((self.sessions, self.players, self.transactions))
        try:
            yield self
        except Exception:
            self.sessions, self.players, self.transactions = saved
            raise

    async def create_session(self, join_code, host_name, buttons, host_balance):
        self.created_codes.append(join_code)
        active = {s.join_code for s in self.sessions.values() if s.is_active}
        if join_code in self.taken_codes or join_code in active:
            raise JoinCodeTaken(join_code)
        session = Session(
            id=str(uuid.uuid4()),
            join_code=join_code,
            buttons=list(buttons),
            created_at=self._now(),
        )
        self.sessions[session.id] = session
        host = await self.create_player(session.id, host_name, host_balance, is_host=True)
        session.host_player_id = host.id
        return replace(session), replace(host)

    async def get_session(self, session_id):
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return replace(self.sessions[session_id])

    async def get_session_by_code(self, code):
        for session in self.sessions.values():
            if session.join_code == code and session.is_active:
                return replace(session)
        raise SessionNotFound(code)

    async def get_session_config(self, session_id):
        session = await self.get_session(session_id)
        return {"buttons": list(session.buttons)}

    async def update_session_buttons(self, session_id, buttons):
        await self.get_session(session_id)
        self.sessions[session_id].buttons = list(buttons)

    async def delete_session(self, session_id):
        await self.get_session(session_id)
        del self.sessions[session_id]
        self.players = {k: p for k, p in self.players.items() if p.session_id != session_id}
        self.transactions = [t for t in self.transactions if t.session_id != session_id]

    async def list_active_sessions(self):
        return [replace(s) for s in self.sessions.values() if s.is_active]

    async def create_player(self, session_id, name, initial_balance, is_host=False):
        await self.get_session(session_id)
        player = Player(
            id=str(uuid.uuid4()),
            session_id=session_id,
            name=name,
            balance=initial_balance,
            initial_balance=initial_balance,
            is_host=is_host,
            created_at=self._now(),
        )
        self.players[player.id] = player
        return replace(player)

    async def get_player(self, player_id):
        if player_id not in self.players:
            raise PlayerNotFound(player_id)
        return replace(self.players[player_id])

    async def list_players(self, session_id):
        return [replace(p) for p in self.players.values() if p.session_id == session_id]

    async def update_player_balance(self, player_id, new_balance, expected_balance=None):
        if player_id not in self.players:
            raise PlayerNotFound(player_id)
        player = self.players[player_id]
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise Conflict("Balance changed")
        if expected_balance is not None and player.balance != expected_balance:
            raise Conflict("Balance changed")
        player.balance = new_balance
        return replace(player)

    async def delete_player(self, player_id):
        if player_id not in self.players:
            raise PlayerNotFound(player_id)
        del self.players[player_id]

    async def reset_balances(self, session_id):
        players = [p for p in self.players.values() if p.session_id == session_id]
        for player in players:
            player.balance = player.initial_balance
        return len(players)

    async def record_transaction(
        self, session_id, source, destination, amount, previous_balance, new_balance, description
    ):
        if source.is_bank and destination.is_bank:
            raise ValidationError("A transaction needs at least one player")
        txn = Transaction(
            id=str(uuid.uuid4()),
            session_id=session_id,
            source=source,
            destination=destination,
            amount=amount,
            previous_balance=previous_balance,
            new_balance=new_balance,
            description=description,
            created_at=self._now(),
        )
        self.transactions.append(txn)
        return self._with_names(txn)

    def _with_names(self, txn: Transaction) -> Transaction:
        def name(endpoint: Endpoint) -> Optional[str]:
            player = self.players.get(endpoint.player_id) if endpoint.player_id else None
            return player.name if player else None

        return replace(txn, from_player_name=name(txn.source), to_player_name=name(txn.destination))

    async def list_transactions(self, session_id, limit=None):
        rows = [self._with_names(t) for t in reversed(self.transactions) if t.session_id == session_id]
        return rows[:limit] if limit is not None else rows


def make_player(
    name: str = "alice",
    balance: int = 1000,
    initial_balance: Optional[int] = None,
    player_id: Optional[str] = None,
    is_host: bool = False,
) -> Player:
    """Build a player snapshot without a store."""
    return Player(
        id=player_id or name,
        session_id="session1",
        name=name,
        balance=balance,
        initial_balance=balance if initial_balance is None else initial_balance,
        is_host=is_host,
    )


@pytest.fixture
def settings() -> Config:
    return Config(
        default_initial_balance=15000,
        default_buttons=[100, 200, 500, 1000, 2000, 5000],
        max_buttons=8,
        join_code_length=6,
        join_code_attempts=3,
        balance_update_retries=3,
        history_limit=50,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def coordinator(store, settings) -> SessionCoordinator:
    return SessionCoordinator(store, settings=settings)
