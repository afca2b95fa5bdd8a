"""
SQLAlchemy-backed ledger store.

Works against SQLite for single-host deployments and any SQLAlchemy
supported server database. Compare-and-set operations are conditional
``UPDATE ... WHERE`` statements executed in one transaction, so a stale
expectation on any row rolls back the whole batch.
"""

from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
from datetime import date, datetime, timezone
from typing import Any, ContextManager, Iterable, Optional, Sequence
import logging
import threading

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.transaction import (
    CanonicalTransaction,
    CategorySource,
    ConnectorRunResult,
    ConnectorRunStatus,
    ItemFailure,
    MatchStatus,
    PushStatus,
    ReconciliationRun,
    RunStatus,
    SourceRef,
    SyncCursor,
    UpsertOutcome,
)
from .base import LedgerStore, MatchTransition, merge_changes
from .orm import Base, CanonicalTransactionRow, ItemFailureRow, ReconciliationRunRow, SyncCursorRow

logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 2


class _StaleState(Exception):
    """A compare-and-set expectation did not hold."""


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_ledger_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    In-memory SQLite shares a single connection across threads, otherwise
    every session would see its own empty database.
    """
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class SqlLedgerStore(LedgerStore):
    """Durable ledger store on top of a SQLAlchemy engine."""

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine or create_ledger_engine(database_url)
        self._session_maker = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        # SQLite allows one writer at a time; serialize in-process to avoid
        # "database is locked" under the orchestrator's worker threads.
        self._sqlite_lock = (
            threading.RLock() if self.engine.dialect.name == "sqlite" else None
        )
        Base.metadata.create_all(self.engine)
        logger.debug(f"Ledger store ready: {self.engine.url.render_as_string(hide_password=True)}")

    def close(self) -> None:
        self.engine.dispose()

    def _serialized(self) -> ContextManager[Any]:
        return self._sqlite_lock if self._sqlite_lock is not None else nullcontext()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        with self._serialized():
            session = self._session_maker()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # Canonical transactions

    @staticmethod
    def _to_row(txn: CanonicalTransaction) -> CanonicalTransactionRow:
        primary = txn.primary_ref
        return CanonicalTransactionRow(
            canonical_id=txn.canonical_id,
            source=primary.source,
            external_id=primary.external_id,
            source_refs=[[r.source, r.external_id] for r in sorted(txn.source_refs)],
            amount=txn.amount,
            currency=txn.currency,
            posted_date=txn.posted_date,
            description=txn.description,
            posted=txn.posted,
            raw_category=txn.raw_category,
            category_id=txn.category_id,
            category_source=txn.category_source.value if txn.category_source else None,
            match_status=txn.match_status.value,
            matched_transaction_id=txn.matched_transaction_id,
            push_status=txn.push_status.value,
            push_attempts=txn.push_attempts,
            push_error=txn.push_error,
            created_run_id=txn.created_run_id,
            created_at=txn.created_at,
        )

    @staticmethod
    def _from_row(row: CanonicalTransactionRow) -> CanonicalTransaction:
        return CanonicalTransaction(
            canonical_id=row.canonical_id,
            source_refs=frozenset(SourceRef(s, e) for s, e in row.source_refs),
            amount=row.amount,
            currency=row.currency,
            posted_date=row.posted_date,
            description=row.description,
            posted=row.posted,
            raw_category=row.raw_category,
            category_id=row.category_id,
            category_source=CategorySource(row.category_source) if row.category_source else None,
            match_status=MatchStatus(row.match_status),
            matched_transaction_id=row.matched_transaction_id,
            push_status=PushStatus(row.push_status),
            push_attempts=row.push_attempts,
            push_error=row.push_error,
            created_run_id=row.created_run_id,
            created_at=_aware(row.created_at),
        )

    def upsert(self, txn: CanonicalTransaction) -> UpsertOutcome:
        for attempt in range(_UPSERT_ATTEMPTS):
            try:
                with self._session() as session:
                    row = session.get(CanonicalTransactionRow, txn.canonical_id)
                    if row is None:
                        session.add(self._to_row(txn))
                        session.flush()
                        return UpsertOutcome.CREATED

                    changes = merge_changes(self._from_row(row), txn)
                    if not changes:
                        return UpsertOutcome.UNCHANGED
                    for name, value in changes.items():
                        setattr(row, name, value)
                    return UpsertOutcome.UPDATED
            except IntegrityError:
                # Another writer inserted the same record first; retry as an update
                if attempt + 1 >= _UPSERT_ATTEMPTS:
                    raise
                logger.debug(f"Concurrent insert of {txn.canonical_id}, retrying upsert")
        raise AssertionError("unreachable")

    def get(self, canonical_id: str) -> Optional[CanonicalTransaction]:
        with self._session() as session:
            row = session.get(CanonicalTransactionRow, canonical_id)
            return self._from_row(row) if row else None

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
        row = CanonicalTransactionRow
        stmt = select(row)
        if canonical_ids is not None:
            stmt = stmt.where(row.canonical_id.in_(list(canonical_ids)))
        if source is not None:
            stmt = stmt.where(row.source == source)
        if match_status is not None:
            stmt = stmt.where(row.match_status == match_status.value)
        if push_status is not None:
            stmt = stmt.where(row.push_status == push_status.value)
        if uncategorized is True:
            stmt = stmt.where(row.category_id.is_(None))
        elif uncategorized is False:
            stmt = stmt.where(row.category_id.is_not(None))
        if start is not None:
            stmt = stmt.where(row.posted_date >= start)
        if end is not None:
            stmt = stmt.where(row.posted_date <= end)
        stmt = stmt.order_by(row.posted_date, row.canonical_id)

        with self._session() as session:
            return [self._from_row(r) for r in session.scalars(stmt)]

    def compare_and_set_match(self, transitions: Sequence[MatchTransition]) -> bool:
        row = CanonicalTransactionRow
        # Consistent lock order across concurrent writers
        ordered = sorted(transitions, key=lambda t: t.canonical_id)
        try:
            with self._session() as session:
                for t in ordered:
                    if t.expected_match_id is None:
                        match_clause = row.matched_transaction_id.is_(None)
                    else:
                        match_clause = row.matched_transaction_id == t.expected_match_id
                    result = session.execute(
                        update(row)
                        .where(
                            row.canonical_id == t.canonical_id,
                            row.match_status == t.expected_status.value,
                            match_clause,
                        )
                        .values(match_status=t.new_status.value, matched_transaction_id=t.new_match_id)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise _StaleState(t.canonical_id)
        except _StaleState as e:
            logger.debug(f"Match compare-and-set rejected at {e}")
            return False
        return True

    def compare_and_set_category(
        self,
        canonical_id: str,
        expected: Optional[str],
        new: Optional[str],
        source: Optional[CategorySource],
    ) -> bool:
        row = CanonicalTransactionRow
        if expected is None:
            expected_clause = row.category_id.is_(None)
        else:
            expected_clause = row.category_id == expected
        with self._session() as session:
            result = session.execute(
                update(row)
                .where(row.canonical_id == canonical_id, expected_clause)
                .values(
                    category_id=new,
                    category_source=source.value if (source and new is not None) else None,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def update_push_status(
        self,
        canonical_id: str,
        status: PushStatus,
        attempts: int,
        error: Optional[str] = None,
    ) -> None:
        with self._session() as session:
            row = session.get(CanonicalTransactionRow, canonical_id)
            if row is None:
                raise KeyError(canonical_id)
            row.push_status = status.value
            row.push_attempts = attempts
            row.push_error = error

    # Cursors

    @staticmethod
    def _cursor_from_row(row: SyncCursorRow) -> SyncCursor:
        return SyncCursor(
            connector=row.connector,
            last_synced_cursor_token=row.last_synced_cursor_token,
            last_run_status=ConnectorRunStatus(row.last_run_status) if row.last_run_status else None,
            last_error=row.last_error,
            consecutive_failures=row.consecutive_failures,
            updated_at=_aware(row.updated_at),
        )

    def get_cursor(self, connector: str) -> SyncCursor:
        with self._session() as session:
            row = session.get(SyncCursorRow, connector)
            return self._cursor_from_row(row) if row else SyncCursor(connector=connector)

    def save_cursor(self, cursor: SyncCursor) -> None:
        with self._session() as session:
            session.merge(
                SyncCursorRow(
                    connector=cursor.connector,
                    last_synced_cursor_token=cursor.last_synced_cursor_token,
                    last_run_status=cursor.last_run_status.value if cursor.last_run_status else None,
                    last_error=cursor.last_error,
                    consecutive_failures=cursor.consecutive_failures,
                    updated_at=cursor.updated_at,
                )
            )

    def list_cursors(self) -> list[SyncCursor]:
        with self._session() as session:
            rows = session.scalars(select(SyncCursorRow).order_by(SyncCursorRow.connector))
            return [self._cursor_from_row(r) for r in rows]

    # Runs

    @staticmethod
    def _run_from_row(row: ReconciliationRunRow) -> ReconciliationRun:
        per_connector = {}
        for name, data in (row.per_connector_result or {}).items():
            fields = dict(data)
            fields["status"] = ConnectorRunStatus(fields["status"])
            per_connector[name] = ConnectorRunResult(**fields)
        return ReconciliationRun(
            id=row.id,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            per_connector_result=per_connector,
            unmatched_count=row.unmatched_count,
            categorized_count=row.categorized_count,
            needs_categorization_count=row.needs_categorization_count,
            matched_pairs=row.matched_pairs,
            pending_review_count=row.pending_review_count,
            overall_status=RunStatus(row.overall_status),
            cancelled=row.cancelled,
        )

    def save_run(self, run: ReconciliationRun) -> None:
        per_connector = {
            name: {
                "fetched": r.fetched,
                "imported": r.imported,
                "updated": r.updated,
                "skipped_duplicate": r.skipped_duplicate,
                "failed": r.failed,
                "pages": r.pages,
                "status": r.status.value,
                "error": r.error,
            }
            for name, r in run.per_connector_result.items()
        }
        with self._session() as session:
            session.merge(
                ReconciliationRunRow(
                    id=run.id,
                    started_at=run.started_at,
                    completed_at=run.completed_at,
                    per_connector_result=per_connector,
                    unmatched_count=run.unmatched_count,
                    categorized_count=run.categorized_count,
                    needs_categorization_count=run.needs_categorization_count,
                    matched_pairs=run.matched_pairs,
                    pending_review_count=run.pending_review_count,
                    overall_status=run.overall_status.value,
                    cancelled=run.cancelled,
                )
            )

    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        with self._session() as session:
            row = session.get(ReconciliationRunRow, run_id)
            return self._run_from_row(row) if row else None

    def list_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        stmt = (
            select(ReconciliationRunRow)
            .order_by(ReconciliationRunRow.started_at.desc(), ReconciliationRunRow.id.desc())
            .limit(limit)
        )
        with self._session() as session:
            return [self._run_from_row(r) for r in session.scalars(stmt)]

    # Item failures

    def record_item_failure(self, failure: ItemFailure) -> None:
        with self._session() as session:
            session.add(
                ItemFailureRow(
                    run_id=failure.run_id,
                    connector=failure.connector,
                    external_id=failure.external_id,
                    error=failure.error,
                    recorded_at=failure.recorded_at,
                )
            )

    def list_item_failures(
        self, connector: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ItemFailure]:
        stmt = select(ItemFailureRow).order_by(ItemFailureRow.id)
        if connector is not None:
            stmt = stmt.where(ItemFailureRow.connector == connector)
        if run_id is not None:
            stmt = stmt.where(ItemFailureRow.run_id == run_id)
        with self._session() as session:
            return [
                ItemFailure(
                    run_id=r.run_id,
                    connector=r.connector,
                    external_id=r.external_id,
                    error=r.error,
                    recorded_at=_aware(r.recorded_at),
                )
                for r in session.scalars(stmt)
            ]
