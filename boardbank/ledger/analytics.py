"""Derived views over a session: totals, ranking, balance evolution, leaders.

All functions are pure over (players, transactions) snapshots. Players are
expected in creation order and transactions newest first, which is how the
store lists them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from boardbank.ledger.models import Player, Transaction

START_LABEL = "start"


@dataclass
class SeriesPoint:
    """Every player's balance at one moment of the session."""
    label: str
    timestamp: Optional[datetime]
    balances: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "balances": dict(self.balances),
        }


@dataclass
class LeadershipCount:
    """How many times a player took the lead."""
    player_id: str
    name: str
    times_leader: int

    def to_dict(self) -> dict:
        return {
            "player_id": self.player_id,
            "name": self.name,
            "times_leader": self.times_leader,
        }


@dataclass
class RankedPlayer:
    """A player's position in the current ranking."""
    position: int
    player_id: str
    name: str
    balance: int
    initial_balance: int
    net: int

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "player_id": self.player_id,
            "name": self.name,
            "balance": self.balance,
            "initial_balance": self.initial_balance,
            "net": self.net,
        }


def dashboard_totals(players: list[Player]) -> dict:
    """Money in play plus the richest and poorest player.

    Ties go to the player listed first.
    """
    richest: Optional[Player] = None
    poorest: Optional[Player] = None
    for player in players:
        if richest is None or player.balance > richest.balance:
            richest = player
        if poorest is None or player.balance < poorest.balance:
            poorest = player

    return {
        "total": sum(p.balance for p in players),
        "player_count": len(players),
        "richest": _summary(richest),
        "poorest": _summary(poorest),
    }


def _summary(player: Optional[Player]) -> Optional[dict]:
    if player is None:
        return None
    return {"player_id": player.id, "name": player.name, "balance": player.balance}


def balance_evolution(players: list[Player], transactions: list[Transaction]) -> list[SeriesPoint]:
    """Replay the history into one point per transaction.

    Starts from every player's initial balance. Entries for players that
    have since been removed still produce a point but move nobody.
    """
    known = {p.id for p in players}
    running: dict[str, int] = {p.id: p.initial_balance for p in players}
    series = [SeriesPoint(START_LABEL, None, dict(running))]

    for index, txn in enumerate(reversed(transactions), 1):
        player_id = txn.affected_player_id
        if player_id in known:
            if txn.is_debit:
                running[player_id] = txn.previous_balance - abs(txn.amount)
            else:
                running[player_id] = txn.new_balance
        series.append(SeriesPoint(
            f"T{index}",
            txn.created_at,
            {p.id: running.get(p.id, p.balance) for p in players},
        ))

    return series


def leader_at(players: list[Player], point: SeriesPoint) -> Optional[Player]:
    """Player with the highest balance at a point; first listed wins ties."""
    leader: Optional[Player] = None
    best = 0
    for player in players:
        balance = point.balances.get(player.id, player.balance)
        if leader is None or balance > best:
            leader = player
            best = balance
    return leader


def leadership_counts(players: list[Player], series: list[SeriesPoint]) -> list[LeadershipCount]:
    """Count lead changes, including the first leader at the start point."""
    counts = {p.id: 0 for p in players}
    current: Optional[str] = None
    for point in series:
        leader = leader_at(players, point)
        if leader is not None and leader.id != current:
            current = leader.id
            counts[leader.id] += 1
    return [LeadershipCount(p.id, p.name, counts[p.id]) for p in players]


def ranking(players: list[Player]) -> list[RankedPlayer]:
    """Players by current balance, highest first. Ties keep list order."""
    ordered = sorted(players, key=lambda p: -p.balance)
    return [
        RankedPlayer(
            position=position,
            player_id=p.id,
            name=p.name,
            balance=p.balance,
            initial_balance=p.initial_balance,
            net=p.net,
        )
        for position, p in enumerate(ordered, 1)
    ]


def format_ranking_table(ranked: list[RankedPlayer]) -> str:
    """Format a ranking as a text table.

    Args:
        ranked: Output of ``ranking``.

    Returns:
        Formatted table string.
    """
    if not ranked:
        return "No players in this session."

    lines = [
        "| #  | Player         |   Balance |   Net (+/-) |",
        "|----|----------------|-----------|-------------|",
    ]

    for r in ranked:
        net_str = f"+{r.net}" if r.net >= 0 else str(r.net)
        lines.append(
            f"| {r.position:<2} | {r.name[:14]:<14} | {r.balance:>9} | {net_str:>11} |"
        )

    return "\n".join(lines)


def build_dashboard(players: list[Player], transactions: list[Transaction]) -> dict:
    """Everything the dashboard shows, ready for JSON."""
    series = balance_evolution(players, transactions)
    return {
        "totals": dashboard_totals(players),
        "ranking": [r.to_dict() for r in ranking(players)],
        "players": [{"id": p.id, "name": p.name} for p in players],
        "series": [point.to_dict() for point in series],
        "leadership": [c.to_dict() for c in leadership_counts(players, series)],
    }
