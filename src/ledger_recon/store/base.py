"""
Ledger store interface.

The store is the single owner of canonical transactions, sync cursors, run
history and item failures. Every match mutation goes through
``compare_and_set_match`` so two overlapping matcher passes (or an operator
override racing an automated pass) can never both claim a transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional, Sequence

from ..models.transaction import (
    CanonicalTransaction,
    CategorySource,
    ItemFailure,
    MatchStatus,
    PushStatus,
    ReconciliationRun,
    SyncCursor,
    UpsertOutcome,
)
from ..utils.exceptions import DedupConflict

# Fields an upsert may change on an existing record. They only move while
# the record is still pending at the source; a settled record never changes.
UPDATABLE_FIELDS = ("posted", "posted_date")


@dataclass(frozen=True)
class MatchTransition:
    """Compare-and-set instruction for one transaction's match fields."""

    canonical_id: str
    expected_status: MatchStatus
    expected_match_id: Optional[str]
    new_status: MatchStatus
    new_match_id: Optional[str]


def merge_changes(
    existing: CanonicalTransaction, candidate: CanonicalTransaction
) -> dict[str, Any]:
    """
    Work out which allowed fields an upsert should change.

    Raises:
        DedupConflict: If the canonical id is shared by a different source record
    """
    if existing.source_refs != candidate.source_refs:
        raise DedupConflict(
            f"Canonical id {existing.canonical_id} already belongs to "
            f"{sorted(existing.source_refs)}, not {sorted(candidate.source_refs)}"
        )
    if existing.posted:
        return {}
    return {
        name: getattr(candidate, name)
        for name in UPDATABLE_FIELDS
        if getattr(existing, name) != getattr(candidate, name)
    }


def sort_key(txn: CanonicalTransaction) -> tuple[date, str]:
    return (txn.posted_date, txn.canonical_id)


class LedgerStore(ABC):
    """Abstract durable store for the canonical ledger."""

    @abstractmethod
    def upsert(self, txn: CanonicalTransaction) -> UpsertOutcome:
        """
        Insert ``txn`` or update the allowed fields of the existing record.

        Returns:
            Whether the record was created, updated or left unchanged

        Raises:
            DedupConflict: If the canonical id is taken by another source record
        """
        pass

    @abstractmethod
    def get(self, canonical_id: str) -> Optional[CanonicalTransaction]:
        pass

    @abstractmethod
    def query(
        self,
        *,
        source: Optional[str] = None,
        match_status: Optional[MatchStatus] = None,
        push_status: Optional[PushStatus] = None,
        uncategorized: Optional[bool] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        canonical_ids: Optional[Iterable[str]] = None,
    ) -> list[CanonicalTransaction]:
        """
        Return transactions matching every given filter.

        Results are ordered by (posted_date, canonical_id) so callers get the
        same order on every call. ``start`` and ``end`` are inclusive.
        """
        pass

    @abstractmethod
    def compare_and_set_match(self, transitions: Sequence[MatchTransition]) -> bool:
        """
        Apply all transitions atomically, or none of them.

        Returns:
            False if any transaction is missing or no longer in its expected state
        """
        pass

    @abstractmethod
    def compare_and_set_category(
        self,
        canonical_id: str,
        expected: Optional[str],
        new: Optional[str],
        source: Optional[CategorySource],
    ) -> bool:
        """Set the category if it is still ``expected``."""
        pass

    @abstractmethod
    def update_push_status(
        self,
        canonical_id: str,
        status: PushStatus,
        attempts: int,
        error: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def get_cursor(self, connector: str) -> SyncCursor:
        """Return the connector's cursor, or a fresh one if it has never synced."""
        pass

    @abstractmethod
    def save_cursor(self, cursor: SyncCursor) -> None:
        pass

    @abstractmethod
    def list_cursors(self) -> list[SyncCursor]:
        pass

    @abstractmethod
    def save_run(self, run: ReconciliationRun) -> None:
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        pass

    @abstractmethod
    def list_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        """Most recent runs first."""
        pass

    @abstractmethod
    def record_item_failure(self, failure: ItemFailure) -> None:
        pass

    @abstractmethod
    def list_item_failures(
        self, connector: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ItemFailure]:
        pass

    def count(self, **filters: Any) -> int:
        return len(self.query(**filters))
