#!/usr/bin/env python3
"""CLI tool for ledger server administration."""
import asyncio
import sys

from boardbank.db.connection import db
from boardbank.db.models import init_db
from boardbank.ledger.analytics import format_ranking_table, ranking
from boardbank.ledger.coordinator import SessionCoordinator, normalize_join_code
from boardbank.ledger.errors import SessionNotFound
from boardbank.ledger.models import SessionSnapshot
from boardbank.ledger.store import PostgresLedgerStore
from boardbank.poller import SessionPoller


def render_snapshot(snapshot: SessionSnapshot, history: int = 10) -> str:
    """Ranking table followed by the latest transactions."""
    lines = [
        f"\nSession {snapshot.session.join_code}  buttons: {snapshot.session.buttons}",
        format_ranking_table(ranking(snapshot.players)),
        "",
        "Latest transactions:",
    ]
    if not snapshot.transactions:
        lines.append("  (none)")
    for txn in snapshot.transactions[:history]:
        when = txn.created_at.strftime("%H:%M:%S") if txn.created_at else "--:--:--"
        lines.append(
            f"  {when}  {txn.from_label:>14} -> {txn.to_label:<14} {txn.amount:>+8d}  {txn.description}"
        )
    return "\n".join(lines)


async def _find_session(store: PostgresLedgerStore, code: str):
    try:
        return await store.get_session_by_code(normalize_join_code(code))
    except SessionNotFound:
        print(f"Error: No active session with code '{code}'.")
        sys.exit(1)


async def create_schema():
    """Create tables and run migrations."""
    await db.connect()
    try:
        await init_db()
        print("Success: Database schema is up to date.")
    finally:
        await db.disconnect()


async def list_sessions():
    """List active sessions."""
    await db.connect()
    try:
        store = PostgresLedgerStore()
        sessions = await store.list_active_sessions()

        if not sessions:
            print("No active sessions.")
            return

        print(f"\n{'Code':<8} {'Players':>7} {'ID':<36} {'Created'}")
        print("-" * 75)
        for session in sessions:
            players = await store.list_players(session.id)
            created = session.created_at.strftime('%Y-%m-%d %H:%M') if session.created_at else 'N/A'
            print(f"{session.join_code:<8} {len(players):>7} {session.id:<36} {created}")
        print(f"\nTotal: {len(sessions)} sessions")
    finally:
        await db.disconnect()


async def show_session(code: str):
    """Print ranking and latest transactions of a session."""
    await db.connect()
    try:
        store = PostgresLedgerStore()
        session = await _find_session(store, code)
        snapshot = await SessionCoordinator(store).snapshot(session.id)
        print(render_snapshot(snapshot))
    finally:
        await db.disconnect()


async def watch_session(code: str):
    """Reprint a session on every poll tick until interrupted."""
    await db.connect()
    try:
        store = PostgresLedgerStore()
        session = await _find_session(store, code)
        poller = SessionPoller(
            SessionCoordinator(store),
            session.id,
            lambda snapshot: print(render_snapshot(snapshot), flush=True),
        )
        try:
            await poller.start()
        finally:
            await poller.stop()
    finally:
        await db.disconnect()


async def reset_session(code: str):
    """Put every balance of a session back to its initial value."""
    await db.connect()
    try:
        store = PostgresLedgerStore()
        session = await _find_session(store, code)
        count = await store.reset_balances(session.id)
        print(f"Success: Reset {count} balances in session '{session.join_code}'.")
    finally:
        await db.disconnect()


async def end_session(code: str):
    """Delete a session with its players and history."""
    await db.connect()
    try:
        store = PostgresLedgerStore()
        session = await _find_session(store, code)
        await store.delete_session(session.id)
        print(f"Success: Session '{session.join_code}' ended.")
    finally:
        await db.disconnect()


def print_usage():
    """Print usage information."""
    print("""
Board Game Bank CLI

Usage:
  python -m boardbank.cli <command> [args]

Commands:
  init-db               Create or migrate the database schema
  sessions              List active sessions
  show <code>           Show ranking and latest transactions
  watch <code>          Keep showing a session, refreshed on every poll
  reset <code>          Reset every balance to its initial value
  end <code>            End a session and delete its data

Examples:
  python -m boardbank.cli sessions
  python -m boardbank.cli watch K7Q2ZD
""")


def main():
    """Main CLI entry point."""
    if len(sys.argv) < 2:
        print_usage()
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "init-db":
        asyncio.run(create_schema())

    elif command == "sessions":
        asyncio.run(list_sessions())

    elif command in ("show", "watch", "reset", "end"):
        if len(sys.argv) < 3:
            print("Error: Session code required.")
            print(f"Usage: python -m boardbank.cli {command} <code>")
            sys.exit(1)
        action = {
            "show": show_session,
            "watch": watch_session,
            "reset": reset_session,
            "end": end_session,
        }[command]
        try:
            asyncio.run(action(sys.argv[2]))
        except KeyboardInterrupt:
            pass

    elif command in ("help", "-h", "--help"):
        print_usage()

    else:
        print(f"Unknown command: {command}")
        print_usage()
        sys.exit(1)


if __name__ == "__main__":
    main()
