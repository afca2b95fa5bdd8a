"""Ledger store implementations."""

from .base import LedgerStore, MatchTransition
from .memory import InMemoryLedgerStore
from .sql import SqlLedgerStore, create_ledger_engine

__all__ = [
    "LedgerStore",
    "MatchTransition",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
    "create_ledger_engine",
]
