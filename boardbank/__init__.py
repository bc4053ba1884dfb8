"""Shared board-game bank ledger service."""

__version__ = "1.0.0"
