"""In-process ledger store guarded by a single lock."""

from dataclasses import replace
from datetime import date
from typing import Iterable, Optional, Sequence
import copy
import threading

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
from .base import LedgerStore, MatchTransition, merge_changes, sort_key


class InMemoryLedgerStore(LedgerStore):
    """
    Ledger store kept in dictionaries.

    Suitable for tests and one-shot runs. Records are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._transactions: dict[str, CanonicalTransaction] = {}
        self._cursors: dict[str, SyncCursor] = {}
        self._runs: dict[str, ReconciliationRun] = {}
        self._failures: list[ItemFailure] = []

    def upsert(self, txn: CanonicalTransaction) -> UpsertOutcome:
        with self._lock:
            existing = self._transactions.get(txn.canonical_id)
            if existing is None:
                self._transactions[txn.canonical_id] = replace(txn)
                return UpsertOutcome.CREATED

            changes = merge_changes(existing, txn)
            if not changes:
                return UpsertOutcome.UNCHANGED
            self._transactions[txn.canonical_id] = replace(existing, **changes)
            return UpsertOutcome.UPDATED

    def get(self, canonical_id: str) -> Optional[CanonicalTransaction]:
        with self._lock:
            txn = self._transactions.get(canonical_id)
            return replace(txn) if txn else None

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
        wanted = set(canonical_ids) if canonical_ids is not None else None
        with self._lock:
            results = [
                replace(txn)
                for txn in self._transactions.values()
                if (wanted is None or txn.canonical_id in wanted)
                and (source is None or txn.source == source)
                and (match_status is None or txn.match_status == match_status)
                and (push_status is None or txn.push_status == push_status)
                and (uncategorized is None or (txn.category_id is None) == uncategorized)
                and (start is None or txn.posted_date >= start)
                and (end is None or txn.posted_date <= end)
            ]
        return sorted(results, key=sort_key)

    def compare_and_set_match(self, transitions: Sequence[MatchTransition]) -> bool:
        with self._lock:
            for t in transitions:
                txn = self._transactions.get(t.canonical_id)
                if (
                    txn is None
                    or txn.match_status != t.expected_status
                    or txn.matched_transaction_id != t.expected_match_id
                ):
                    return False
            for t in transitions:
                txn = self._transactions[t.canonical_id]
                txn.match_status = t.new_status
                txn.matched_transaction_id = t.new_match_id
            return True

    def compare_and_set_category(
        self,
        canonical_id: str,
        expected: Optional[str],
        new: Optional[str],
        source: Optional[CategorySource],
    ) -> bool:
        with self._lock:
            txn = self._transactions.get(canonical_id)
            if txn is None or txn.category_id != expected:
                return False
            txn.category_id = new
            txn.category_source = source if new is not None else None
            return True

    def update_push_status(
        self,
        canonical_id: str,
        status: PushStatus,
        attempts: int,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            txn = self._transactions.get(canonical_id)
            if txn is None:
                raise KeyError(canonical_id)
            txn.push_status = status
            txn.push_attempts = attempts
            txn.push_error = error

    def get_cursor(self, connector: str) -> SyncCursor:
        with self._lock:
            cursor = self._cursors.get(connector)
            return replace(cursor) if cursor else SyncCursor(connector=connector)

    def save_cursor(self, cursor: SyncCursor) -> None:
        with self._lock:
            self._cursors[cursor.connector] = replace(cursor)

    def list_cursors(self) -> list[SyncCursor]:
        with self._lock:
            return [replace(c) for _, c in sorted(self._cursors.items())]

    def save_run(self, run: ReconciliationRun) -> None:
        with self._lock:
            self._runs[run.id] = copy.deepcopy(run)

    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    def list_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        with self._lock:
            runs = sorted(self._runs.values(), key=lambda r: (r.started_at, r.id), reverse=True)
            return [copy.deepcopy(r) for r in runs[:limit]]

    def record_item_failure(self, failure: ItemFailure) -> None:
        with self._lock:
            self._failures.append(replace(failure))

    def list_item_failures(
        self, connector: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ItemFailure]:
        with self._lock:
            return [
                replace(f)
                for f in self._failures
                if (connector is None or f.connector == connector)
                and (run_id is None or f.run_id == run_id)
            ]
