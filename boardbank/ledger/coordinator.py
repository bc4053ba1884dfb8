"""Session coordinator: session lifecycle, players and money movements."""
import secrets
import string
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from boardbank.config import Config, config as default_config
from boardbank.ledger import analytics, engine
from boardbank.ledger.errors import (
    Conflict,
    Forbidden,
    JoinCodeTaken,
    PlayerNotFound,
    SessionNotFound,
    ValidationError,
)
from boardbank.ledger.models import Endpoint, Player, Session, SessionSnapshot, Transaction
from boardbank.ledger.store import LedgerStore
from boardbank.state.analytics_cache import AnalyticsCache
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)

JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_join_code(length: int) -> str:
    """Random uppercase alphanumeric join code."""
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_join_code(code: str) -> str:
    return (code or "").strip().upper()


@dataclass
class MovementResult:
    """Players as written and transactions recorded by one operation."""
    players: list[Player] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "players": [p.to_dict() for p in self.players],
            "transactions": [t.to_dict() for t in self.transactions],
        }


class SessionCoordinator:
    """Orchestrates sessions on top of a ledger store.

    Money movements are validated by the balance engine on fresh reads and
    written in one store transaction. Balance writes are conditional on the
    balance that was read; a concurrent change rolls the operation back and
    it is retried from a new read.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Optional[AnalyticsCache] = None,
        settings: Optional[Config] = None,
    ):
        """Initialize the coordinator.

        Args:
            store: Ledger persistence.
            cache: Optional dashboard cache, dropped on every write.
            settings: Configuration, defaults to the global config.
        """
        self.store = store
        self.cache = cache
        self.settings = settings or default_config

    # Validation

    def _clean_name(self, name: Optional[str]) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Name cannot be empty")
        return cleaned

    def _initial_balance(self, balance: Optional[int]) -> int:
        if balance is None:
            return self.settings.default_initial_balance
        valid = isinstance(balance, int) and not isinstance(balance, bool)
        if not valid or not 0 <= balance <= engine.MAX_BALANCE:
            raise ValidationError(f"Initial balance must be an integer between 0 and {engine.MAX_BALANCE}")
        return balance

    def _validate_buttons(self, buttons: Optional[list[int]]) -> list[int]:
        if buttons is None:
            return list(self.settings.default_buttons)
        if not 1 <= len(buttons) <= self.settings.max_buttons:
            raise ValidationError(f"Between 1 and {self.settings.max_buttons} buttons are required")
        for value in buttons:
            if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= engine.MAX_BALANCE:
                raise ValidationError("Button amounts must be positive integers")
        return list(buttons)

    # Lookups

    async def get_session(self, session_id: str) -> Session:
        return await self.store.get_session(session_id)

    async def get_session_config(self, session_id: str) -> dict:
        return await self.store.get_session_config(session_id)

    async def list_players(self, session_id: str) -> list[Player]:
        await self.store.get_session(session_id)
        return await self.store.list_players(session_id)

    async def list_transactions(self, session_id: str, limit: Optional[int] = None) -> list[Transaction]:
        await self.store.get_session(session_id)
        return await self.store.list_transactions(session_id, limit or self.settings.history_limit)

    async def _player_in_session(self, store: LedgerStore, session_id: str, player_id: str) -> Player:
        player = await store.get_player(player_id)
        if player.session_id != session_id:
            raise PlayerNotFound(player_id)
        return player

    async def _require_host(self, store: LedgerStore, session_id: str, requester_id: str) -> Player:
        try:
            requester = await self._player_in_session(store, session_id, requester_id)
        except PlayerNotFound:
            raise Forbidden("Only the host can do this")
        if not requester.is_host:
            raise Forbidden("Only the host can do this")
        return requester

    async def _invalidate(self, session_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate(session_id)

    # Session lifecycle

    async def create_session(
        self,
        host_name: str,
        buttons: Optional[list[int]] = None,
        host_balance: Optional[int] = None,
    ) -> tuple[Session, Player]:
        """Create a session and its host player.

        Raises:
            ValidationError: For an empty name, bad buttons or balance.
            JoinCodeTaken: If every generated code collided.
        """
        name = self._clean_name(host_name)
        valid_buttons = self._validate_buttons(buttons)
        balance = self._initial_balance(host_balance)

        attempts = max(1, self.settings.join_code_attempts)
        attempt = 1
        while True:
            code = generate_join_code(self.settings.join_code_length)
            try:
                return await self.store.create_session(code, name, valid_buttons, balance)
            except JoinCodeTaken:
                if attempt >= attempts:
                    raise
                logger.warning(f"Join code {code} collided, regenerating ({attempt}/{attempts})")
                attempt += 1

    async def join_session(
        self, code: str, player_name: str, initial_balance: Optional[int] = None
    ) -> tuple[Session, Player]:
        """Join the active session with this code as a new player.

        Raises:
            SessionNotFound: If no active session uses the code.
        """
        normalized = normalize_join_code(code)
        name = self._clean_name(player_name)
        balance = self._initial_balance(initial_balance)
        if not normalized:
            raise SessionNotFound(code)

        session = await self.store.get_session_by_code(normalized)
        player = await self.store.create_player(session.id, name, balance)
        await self._invalidate(session.id)
        logger.info(f"{player.name} joined session {session.join_code} with {balance}")
        return session, player

    async def add_player(
        self,
        session_id: str,
        requester_id: str,
        name: str,
        initial_balance: Optional[int] = None,
    ) -> Player:
        """Host adds a player directly (e.g. someone without a device)."""
        cleaned = self._clean_name(name)
        balance = self._initial_balance(initial_balance)
        await self.store.get_session(session_id)
        await self._require_host(self.store, session_id, requester_id)

        player = await self.store.create_player(session_id, cleaned, balance)
        await self._invalidate(session_id)
        logger.info(f"Host added {player.name} to session {session_id} with {balance}")
        return player

    async def configure_buttons(self, session_id: str, requester_id: str, buttons: list[int]) -> list[int]:
        """Replace the quick-amount buttons. Clients pick them up on their next poll."""
        valid = self._validate_buttons(buttons)
        await self.store.get_session(session_id)
        await self._require_host(self.store, session_id, requester_id)
        await self.store.update_session_buttons(session_id, valid)
        logger.info(f"Buttons for session {session_id} set to {valid}")
        return valid

    async def remove_player(self, session_id: str, requester_id: str, player_id: str) -> None:
        """Host removes a player. Their history stays, labelled as removed.

        Raises:
            Forbidden: If the requester is not the host or targets the host.
            PlayerNotFound: If the player is not in this session.
        """
        await self.store.get_session(session_id)
        await self._require_host(self.store, session_id, requester_id)
        target = await self._player_in_session(self.store, session_id, player_id)
        if target.is_host:
            raise Forbidden("The host cannot be removed")

        await self.store.delete_player(target.id)
        await self._invalidate(session_id)
        logger.info(f"Removed {target.name} from session {session_id}")

    async def end_session(self, session_id: str, requester_id: str) -> None:
        """Host ends the session; players and history are deleted for good."""
        session = await self.store.get_session(session_id)
        await self._require_host(self.store, session_id, requester_id)
        await self.store.delete_session(session_id)
        await self._invalidate(session_id)
        logger.info(f"Ended session {session.join_code} ({session_id})")

    async def reset_balances(self, session_id: str, requester_id: str) -> list[Player]:
        """Host puts every player back on their initial balance.

        Resets are not recorded as transactions.
        """
        await self.store.get_session(session_id)
        await self._require_host(self.store, session_id, requester_id)

        async def build(store: LedgerStore) -> engine.Movement:
            return engine.Movement(updates=engine.reset_all(await store.list_players(session_id)))

        result = await self._write(session_id, build)
        logger.info(f"Reset {len(result.players)} balances in session {session_id}")
        return await self.store.list_players(session_id)

    # Money movements

    async def _write(
        self,
        session_id: str,
        build: Callable[[LedgerStore], Awaitable[engine.Movement]],
    ) -> MovementResult:
        """Build a movement from fresh reads and write it atomically.

        Balance rows are written in player id order so that concurrent
        movements touching the same players lock them in the same order.
        """
        await self.store.get_session(session_id)
        retries = max(1, self.settings.balance_update_retries)

        for attempt in range(1, retries + 1):
            try:
                async with self.store.atomic() as store:
                    movement = await build(store)
                    result = MovementResult()
                    for update in sorted(movement.updates, key=lambda u: u.player_id):
                        result.players.append(await store.update_player_balance(
                            update.player_id,
                            update.new_balance,
                            expected_balance=update.previous_balance,
                        ))
                    for draft in movement.transactions:
                        result.transactions.append(await store.record_transaction(
                            session_id,
                            draft.source,
                            draft.destination,
                            draft.amount,
                            draft.previous_balance,
                            draft.new_balance,
                            draft.description,
                        ))
                break
            except Conflict as e:
                if attempt == retries:
                    logger.warning(f"Giving up after {retries} conflicting writes in session {session_id}")
                    raise Conflict("Balance changed by someone else, please try again") from e
                logger.warning(f"Balance conflict in session {session_id}, retrying ({attempt}/{retries})")

        await self._invalidate(session_id)
        for txn in result.transactions:
            logger.info(
                f"Session {session_id}: {txn.from_label} -> {txn.to_label} "
                f"{txn.amount:+d} ({txn.previous_balance} -> {txn.new_balance})"
            )
        return result

    async def _apply(
        self,
        session_id: str,
        player_ids: list[Optional[str]],
        build: Callable[..., engine.Movement],
    ) -> MovementResult:
        """Read the players and write the movement ``build`` makes of them.

        ``None`` in ``player_ids`` stands for the bank and is passed through.
        """
        async def load_and_build(store: LedgerStore) -> engine.Movement:
            players = [
                await self._player_in_session(store, session_id, pid) if pid else None
                for pid in player_ids
            ]
            return build(*players)

        return await self._write(session_id, load_and_build)

    async def bank_credit(self, session_id: str, player_id: str, amount: int) -> MovementResult:
        """The bank pays a player."""
        return await self._apply(
            session_id, [player_id], lambda player: engine.bank_credit(player, amount)
        )

    async def quick_pay(self, session_id: str, player_id: str, amount: int) -> MovementResult:
        """A player pays the bank.

        Raises:
            InsufficientFunds: If the player cannot cover the amount.
        """
        return await self._apply(
            session_id, [player_id], lambda player: engine.quick_pay(player, amount)
        )

    async def set_balance(self, session_id: str, player_id: str, new_balance: int) -> MovementResult:
        """Overwrite a player's balance."""
        return await self._apply(
            session_id, [player_id], lambda player: engine.set_balance(player, new_balance)
        )

    async def transfer(
        self,
        session_id: str,
        source: str,
        destination: str,
        amount: int,
        description: Optional[str] = None,
    ) -> MovementResult:
        """Move money between two selectors, each ``"bank"`` or a player id.

        Raises:
            ValidationError: If both selectors are the bank or the same player.
            InsufficientFunds: If a player source cannot cover the amount.
        """
        src = Endpoint.parse(source)
        dst = Endpoint.parse(destination)
        if src.is_bank and dst.is_bank:
            raise ValidationError("A transfer needs at least one player")
        return await self._apply(
            session_id,
            [src.player_id, dst.player_id],
            lambda s, d: engine.transfer(s, d, amount, description),
        )

    # Read views

    async def snapshot(self, session_id: str, limit: Optional[int] = None) -> SessionSnapshot:
        """Session, players and latest transactions for one refresh tick."""
        session = await self.store.get_session(session_id)
        players = await self.store.list_players(session_id)
        transactions = await self.store.list_transactions(session_id, limit or self.settings.history_limit)
        return SessionSnapshot(session, players, transactions)

    async def dashboard(self, session_id: str) -> dict:
        """Analytics over the full history, cached until the next poll tick."""
        generation = None
        if self.cache is not None:
            cached = await self.cache.get_dashboard(session_id)
            if cached is not None:
                return cached
            # Read before computing: a write landing meanwhile bumps it
            generation = await self.cache.generation(session_id)

        await self.store.get_session(session_id)
        players = await self.store.list_players(session_id)
        transactions = await self.store.list_transactions(session_id)
        dashboard = analytics.build_dashboard(players, transactions)

        if generation is not None:
            await self.cache.set_dashboard(session_id, dashboard, generation)
        return dashboard
