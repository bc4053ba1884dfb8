"""Balance engine: validates money movements and computes their effects.

Nothing here touches storage. Each operation returns a ``Movement`` listing
the balance updates to apply and the transactions to record; the session
coordinator writes both in one database transaction.
"""
from dataclasses import dataclass, field
from typing import Optional

from boardbank.ledger.errors import InsufficientFunds, ValidationError
from boardbank.ledger.models import BANK_LABEL, Endpoint, Player

# Balances and amounts are stored as 32-bit integers
MAX_BALANCE = 2**31 - 1


@dataclass(frozen=True)
class BalanceUpdate:
    """New balance for one player, with the balance it was computed from."""
    player_id: str
    previous_balance: int
    new_balance: int


@dataclass(frozen=True)
class TransactionDraft:
    """A transaction ready to be recorded."""
    source: Endpoint
    destination: Endpoint
    amount: int
    previous_balance: int
    new_balance: int
    description: str


@dataclass
class Movement:
    """Effects of one operation."""
    updates: list[BalanceUpdate] = field(default_factory=list)
    transactions: list[TransactionDraft] = field(default_factory=list)

    def balance_of(self, player_id: str) -> Optional[int]:
        """Resulting balance for a player touched by this movement."""
        for update in self.updates:
            if update.player_id == player_id:
                return update.new_balance
        return None


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer")


def _require_in_range(*values: int) -> None:
    for value in values:
        if not -MAX_BALANCE <= value <= MAX_BALANCE:
            raise ValidationError(f"Amounts and balances must be between -{MAX_BALANCE} and {MAX_BALANCE}")


def _signed(value: int) -> str:
    return f"+{value}" if value >= 0 else str(value)


def bank_credit(player: Player, amount: int) -> Movement:
    """Pay ``amount`` from the bank to a player. The bank never runs out."""
    _require_positive(amount)
    new_balance = player.balance + amount
    _require_in_range(amount, new_balance)
    return Movement(
        updates=[BalanceUpdate(player.id, player.balance, new_balance)],
        transactions=[
            TransactionDraft(
                source=Endpoint.bank(),
                destination=Endpoint.player(player.id),
                amount=amount,
                previous_balance=player.balance,
                new_balance=new_balance,
                description=f"Received {amount} from bank",
            )
        ],
    )


def quick_pay(player: Player, amount: int) -> Movement:
    """Take ``amount`` from a player into the bank (quick buttons).

    Recorded as a negative adjustment on the player: bank as source, the
    paying player as destination.

    Raises:
        InsufficientFunds: If the payment would leave a negative balance.
    """
    _require_positive(amount)
    if player.balance - amount < 0:
        raise InsufficientFunds(player.name, player.balance, amount)
    new_balance = player.balance - amount
    _require_in_range(amount, new_balance)
    return Movement(
        updates=[BalanceUpdate(player.id, player.balance, new_balance)],
        transactions=[
            TransactionDraft(
                source=Endpoint.bank(),
                destination=Endpoint.player(player.id),
                amount=-amount,
                previous_balance=player.balance,
                new_balance=new_balance,
                description=f"Balance adjustment: {_signed(-amount)}",
            )
        ],
    )


def set_balance(player: Player, new_balance: int) -> Movement:
    """Overwrite a player's balance. Negative balances are allowed here."""
    if isinstance(new_balance, bool) or not isinstance(new_balance, int):
        raise ValidationError("Balance must be an integer")
    delta = new_balance - player.balance
    _require_in_range(new_balance, delta)
    return Movement(
        updates=[BalanceUpdate(player.id, player.balance, new_balance)],
        transactions=[
            TransactionDraft(
                source=Endpoint.bank(),
                destination=Endpoint.player(player.id),
                amount=delta,
                previous_balance=player.balance,
                new_balance=new_balance,
                description=f"Balance adjustment: {_signed(delta)}",
            )
        ],
    )


def transfer(
    source: Optional[Player],
    destination: Optional[Player],
    amount: int,
    description: Optional[str] = None,
) -> Movement:
    """Move money between two endpoints; ``None`` stands for the bank.

    A player destination gets a credit entry and a player source gets a
    debit entry, so a player-to-player transfer records one transaction per
    affected party.

    Raises:
        ValidationError: If the amount is not positive, both sides are the
            bank, or both sides are the same player.
        InsufficientFunds: If a player source cannot cover the amount.
    """
    _require_positive(amount)
    _require_in_range(amount)
    if source is None and destination is None:
        raise ValidationError("A transfer needs at least one player")
    if source is not None and destination is not None and source.id == destination.id:
        raise ValidationError("Cannot transfer to the same player")
    if source is not None and amount > source.balance:
        raise InsufficientFunds(source.name, source.balance, amount)

    text = (description or "").strip()
    if not text:
        text = (
            f"Transfer from {source.name if source else BANK_LABEL} "
            f"to {destination.name if destination else BANK_LABEL}"
        )

    source_endpoint = Endpoint.player(source.id) if source else Endpoint.bank()
    destination_endpoint = Endpoint.player(destination.id) if destination else Endpoint.bank()
    movement = Movement()

    if destination is not None:
        new_balance = destination.balance + amount
        _require_in_range(new_balance)
        movement.updates.append(BalanceUpdate(destination.id, destination.balance, new_balance))
        movement.transactions.append(
            TransactionDraft(
                source=source_endpoint,
                destination=destination_endpoint,
                amount=amount,
                previous_balance=destination.balance,
                new_balance=new_balance,
                description=text,
            )
        )

    if source is not None:
        new_balance = source.balance - amount
        movement.updates.append(BalanceUpdate(source.id, source.balance, new_balance))
        movement.transactions.append(
            TransactionDraft(
                source=source_endpoint,
                destination=destination_endpoint,
                amount=-amount,
                previous_balance=source.balance,
                new_balance=new_balance,
                description=text,
            )
        )

    return movement


def reset_all(players: list[Player]) -> list[BalanceUpdate]:
    """Return every player to their initial balance.

    No transactions are produced, so resets do not show up in the history.
    """
    return [
        BalanceUpdate(player.id, player.balance, player.initial_balance)
        for player in players
    ]
