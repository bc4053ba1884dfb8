"""Ledger records: sessions, players and transactions."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

BANK = "bank"
BANK_LABEL = "Bank"
REMOVED_PLAYER_LABEL = "Removed player"


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class Endpoint:
    """One side of a money movement: the bank or a specific player."""
    player_id: Optional[str] = None

    @classmethod
    def bank(cls) -> "Endpoint":
        return cls(None)

    @classmethod
    def player(cls, player_id: str) -> "Endpoint":
        return cls(str(player_id))

    @classmethod
    def parse(cls, selector: Optional[str]) -> "Endpoint":
        """Parse a client selector: ``"bank"`` (or empty) or a player id."""
        if selector is None or not selector.strip() or selector.strip().lower() == BANK:
            return cls.bank()
        return cls.player(selector.strip())

    @property
    def is_bank(self) -> bool:
        return self.player_id is None

    def __str__(self) -> str:
        return BANK if self.is_bank else self.player_id


@dataclass
class Session:
    """A running game, joined by its short code."""
    id: str
    join_code: str
    buttons: list[int]
    is_active: bool = True
    host_player_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "join_code": self.join_code,
            "buttons": list(self.buttons),
            "is_active": self.is_active,
            "host_player_id": self.host_player_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_record(cls, record) -> "Session":
        """Create from database record."""
        return cls(
            id=str(record["id"]),
            join_code=record["join_code"],
            buttons=list(record["buttons"]),
            is_active=record["is_active"],
            host_player_id=_str_or_none(record["host_player_id"]),
            created_at=record["created_at"],
        )


@dataclass
class Player:
    """A player and their current balance."""
    id: str
    session_id: str
    name: str
    balance: int
    initial_balance: int
    is_host: bool = False
    created_at: Optional[datetime] = None

    @property
    def net(self) -> int:
        """Gain (positive) or loss since the session started."""
        return self.balance - self.initial_balance

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "balance": self.balance,
            "initial_balance": self.initial_balance,
            "net": self.net,
            "is_host": self.is_host,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_record(cls, record) -> "Player":
        """Create from database record."""
        return cls(
            id=str(record["id"]),
            session_id=str(record["session_id"]),
            name=record["name"],
            balance=record["balance"],
            initial_balance=record["initial_balance"],
            is_host=record["is_host"],
            created_at=record["created_at"],
        )


@dataclass
class Transaction:
    """An immutable history entry.

    ``previous_balance`` and ``new_balance`` describe the affected player
    only: the source player for a debit (negative amount with a player
    source), the destination player otherwise. A debit from the quick-pay
    buttons keeps the bank as source and the paying player as destination.
    """
    id: str
    session_id: str
    source: Endpoint
    destination: Endpoint
    amount: int
    previous_balance: int
    new_balance: int
    description: str
    created_at: Optional[datetime] = None
    from_player_name: Optional[str] = None
    to_player_name: Optional[str] = None

    @property
    def is_debit(self) -> bool:
        return self.amount < 0 and not self.source.is_bank

    @property
    def affected_player_id(self) -> Optional[str]:
        if self.is_debit:
            return self.source.player_id
        return self.destination.player_id

    @property
    def from_label(self) -> str:
        return _label(self.source, self.from_player_name)

    @property
    def to_label(self) -> str:
        return _label(self.destination, self.to_player_name)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "from_player_id": self.source.player_id,
            "to_player_id": self.destination.player_id,
            "from_player_name": self.from_player_name,
            "to_player_name": self.to_player_name,
            "from_label": self.from_label,
            "to_label": self.to_label,
            "amount": self.amount,
            "previous_balance": self.previous_balance,
            "new_balance": self.new_balance,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_record(cls, record) -> "Transaction":
        """Create from database record, with optional joined player names."""
        keys = record.keys()
        return cls(
            id=str(record["id"]),
            session_id=str(record["session_id"]),
            source=Endpoint(_str_or_none(record["from_player_id"])),
            destination=Endpoint(_str_or_none(record["to_player_id"])),
            amount=record["amount"],
            previous_balance=record["previous_balance"],
            new_balance=record["new_balance"],
            description=record["description"],
            created_at=record["created_at"],
            from_player_name=record["from_player_name"] if "from_player_name" in keys else None,
            to_player_name=record["to_player_name"] if "to_player_name" in keys else None,
        )


def _label(endpoint: Endpoint, name: Optional[str]) -> str:
    if endpoint.is_bank:
        return BANK_LABEL
    return name if name is not None else REMOVED_PLAYER_LABEL


@dataclass
class SessionSnapshot:
    """Everything a client needs for one refresh tick."""
    session: Session
    players: list[Player] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)

    def get_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None
