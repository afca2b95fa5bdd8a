"""
Sync orchestrator.

A run fetches every enabled connector concurrently, one thread per
connector, with pages inside a connector processed strictly in order. Once
every fetch loop has finished, one categorization pass and one matching pass
run over the resulting ledger state and the run summary is persisted.

Cursor discipline: a connector's cursor is saved only after its page has been
fully upserted. A failed call, a timeout or a page that failed half way
leaves the cursor where it was, so the next run refetches the same page and
the idempotent upsert absorbs the overlap.
"""

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from typing import Callable, Optional
import logging
import threading
import time
import uuid

from ..canonical.dedup import Canonicalizer
from ..categorization.mapper import CategorizationResult, CategoryMapper
from ..config import SyncConfig
from ..connectors.base import ConnectorAdapter, FetchPage
from ..matching.engine import ReconciliationMatcher
from ..models.transaction import (
    ConnectorRunResult,
    ConnectorRunStatus,
    ItemFailure,
    MatchStatus,
    ReconciliationRun,
    RunStatus,
    SyncCursor,
    utcnow,
)
from ..store.base import LedgerStore
from ..utils.exceptions import (
    ConnectorError,
    ConnectorTimeout,
    ConnectorTransientError,
    ErrorKind,
)

logger = logging.getLogger(__name__)

AlertHook = Callable[[str, SyncCursor], None]

_STATUS_BY_KIND = {
    ErrorKind.AUTH_FAILURE: ConnectorRunStatus.AUTH_FAILURE,
    ErrorKind.TRANSIENT: ConnectorRunStatus.TRANSIENT_FAILURE,
    ErrorKind.RATE_LIMITED: ConnectorRunStatus.RATE_LIMITED,
    ErrorKind.PERMANENT: ConnectorRunStatus.PERMANENT_FAILURE,
}


@dataclass
class _ConnectorOutcome:
    result: ConnectorRunResult
    created_ids: list[str] = field(default_factory=list)


def overall_status(results: dict[str, ConnectorRunResult]) -> RunStatus:
    """
    Summarize per-connector outcomes.

    ``success`` only when every connector succeeded, ``failed`` when every
    connector failed, ``partial`` otherwise (including cancelled connectors).
    """
    if all(r.succeeded for r in results.values()):
        return RunStatus.SUCCESS
    failures = [
        r for r in results.values()
        if not r.succeeded and r.status != ConnectorRunStatus.CANCELLED
    ]
    if len(failures) == len(results):
        return RunStatus.FAILED
    return RunStatus.PARTIAL


class SyncOrchestrator:
    """Runs sync + reconciliation passes over all connectors."""

    def __init__(
        self,
        store: LedgerStore,
        connectors: dict[str, ConnectorAdapter],
        canonicalizer: Canonicalizer,
        mapper: CategoryMapper,
        matcher: ReconciliationMatcher,
        settings: SyncConfig,
        alert_hook: Optional[AlertHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Ledger store
            connectors: Enabled connectors by name
            canonicalizer: Dedup and canonicalization stage
            mapper: Category mapper
            matcher: Reconciliation matcher
            settings: Sync section of the configuration
            alert_hook: Called with (connector, cursor) when a connector's
                consecutive failures exceed the alert threshold
            sleep: Used for in-run retry backoff
        """
        self.store = store
        self.connectors = connectors
        self.canonicalizer = canonicalizer
        self.mapper = mapper
        self.matcher = matcher
        self.settings = settings
        self.alert_hook = alert_hook
        self._sleep = sleep

        self._connector_locks = {name: threading.Lock() for name in connectors}
        self._active: dict[str, threading.Event] = {}
        self._active_lock = threading.Lock()
        self._run_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="recon-run")

    # Run lifecycle

    def submit(self) -> tuple[str, "Future[ReconciliationRun]"]:
        """
        Start a run in the background.

        Returns:
            The run id (already persisted as running) and a future for the
            finished run
        """
        run_id = uuid.uuid4().hex
        cancel_event = self._register(run_id)
        self.store.save_run(ReconciliationRun(id=run_id, started_at=utcnow()))
        future = self._run_executor.submit(self.run, cancel_event, run_id)
        return run_id, future

    def cancel(self, run_id: str) -> bool:
        """
        Ask an in-flight run to stop.

        In-flight pages finish and are persisted; no new pages are fetched.

        Returns:
            False if the run is not in flight
        """
        with self._active_lock:
            event = self._active.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._run_executor.shutdown(wait=wait)

    def _register(self, run_id: str, event: Optional[threading.Event] = None) -> threading.Event:
        event = event or threading.Event()
        with self._active_lock:
            self._active[run_id] = event
        return event

    def run(
        self,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> ReconciliationRun:
        """
        Execute one full sync and reconciliation run.

        Args:
            cancel_event: Set to request cooperative cancellation
            run_id: Id to use; generated when omitted

        Returns:
            The persisted ReconciliationRun
        """
        run_id = run_id or uuid.uuid4().hex
        cancel_event = self._register(run_id, cancel_event)

        run = self.store.get_run(run_id) or ReconciliationRun(id=run_id, started_at=utcnow())
        self.store.save_run(run)
        logger.info(f"Starting run {run_id} over {len(self.connectors)} connector(s)")

        try:
            outcomes = self._fetch_all(run_id, cancel_event)
            run.per_connector_result = {name: o.result for name, o in sorted(outcomes.items())}
            created_ids = sorted({cid for o in outcomes.values() for cid in o.created_ids})

            # Barrier passed: every fetch loop has finished
            categorization = (
                self.mapper.run_pass(created_ids) if created_ids else CategorizationResult()
            )
            matching = self.matcher.run_pass()

            run.categorized_count = categorization.categorized
            run.matched_pairs = matching.matched_pairs
            run.unmatched_count = self.store.count(match_status=MatchStatus.UNMATCHED)
            run.pending_review_count = self.store.count(match_status=MatchStatus.PENDING_REVIEW)
            run.needs_categorization_count = self.store.count(uncategorized=True)
            run.cancelled = cancel_event.is_set()
            run.overall_status = overall_status(run.per_connector_result)
        except Exception:
            run.overall_status = RunStatus.FAILED
            run.completed_at = utcnow()
            self.store.save_run(run)
            logger.exception(f"Run {run_id} aborted")
            raise
        finally:
            with self._active_lock:
                self._active.pop(run_id, None)

        run.completed_at = utcnow()
        self.store.save_run(run)
        logger.info(
            f"Run {run_id} {run.overall_status.value} in {run.duration_seconds:.2f}s: "
            f"{run.matched_pairs} matched, {run.unmatched_count} unmatched, "
            f"{run.pending_review_count} pending review, "
            f"{run.needs_categorization_count} need categorization"
        )
        return run

    # Fetch stage

    def _fetch_all(
        self, run_id: str, cancel_event: threading.Event
    ) -> dict[str, _ConnectorOutcome]:
        outcomes: dict[str, _ConnectorOutcome] = {}
        if not self.connectors:
            return outcomes

        workers = max(1, min(self.settings.max_workers, len(self.connectors)))
        # Separate pool for the guarded connector calls so a hung call can be
        # abandoned without blocking the connector's own worker.
        call_pool = ThreadPoolExecutor(
            max_workers=len(self.connectors) * (self.settings.transient_retries + 1),
            thread_name_prefix="connector-call",
        )
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="connector") as pool:
                futures = {
                    pool.submit(
                        self._sync_connector, name, connector, run_id, cancel_event, call_pool
                    ): name
                    for name, connector in self.connectors.items()
                }
                for future in as_completed(futures):
                    outcomes[futures[future]] = future.result()
        finally:
            call_pool.shutdown(wait=False, cancel_futures=True)
        return outcomes

    def _sync_connector(
        self,
        name: str,
        connector: ConnectorAdapter,
        run_id: str,
        cancel_event: threading.Event,
        call_pool: ThreadPoolExecutor,
    ) -> _ConnectorOutcome:
        """Fetch loop for one connector. Never raises: failures are recorded."""
        outcome = _ConnectorOutcome(result=ConnectorRunResult())
        result = outcome.result

        with self._connector_locks[name]:
            cursor = self.store.get_cursor(name)
            token = cursor.last_synced_cursor_token
            try:
                while True:
                    if cancel_event.is_set():
                        result.status = ConnectorRunStatus.CANCELLED
                        logger.info(f"{name}: cancelled after {result.pages} page(s)")
                        break
                    if result.pages >= self.settings.max_pages_per_run:
                        logger.info(f"{name}: page limit reached, remaining pages deferred")
                        break

                    page = self._fetch_with_retry(name, connector, token, call_pool)
                    self._ingest(name, page, run_id, outcome)

                    if page.next_cursor is not None:
                        token = page.next_cursor
                    cursor.last_synced_cursor_token = token
                    cursor.updated_at = utcnow()
                    self.store.save_cursor(cursor)

                    if not page.has_more:
                        break
            except ConnectorError as e:
                result.status = _STATUS_BY_KIND[e.kind]
                result.error = str(e)
                if e.partial:
                    logger.warning(
                        f"{name}: discarding {len(e.partial)} record(s) from a partially fetched page"
                    )
                logger.error(f"{name}: sync stopped ({result.status.value}): {e}")
            except Exception as e:
                # Store or canonicalization failure; isolate it to this connector
                result.status = ConnectorRunStatus.PERMANENT_FAILURE
                result.error = f"{type(e).__name__}: {e}"
                logger.exception(f"{name}: unexpected error during sync")

            self._finish_cursor(name, cursor, result)

        logger.info(
            f"{name}: {result.status.value}, {result.pages} page(s), {result.fetched} fetched, "
            f"{result.imported} new, {result.updated} updated, "
            f"{result.skipped_duplicate} duplicate, {result.failed} failed"
        )
        return outcome

    def _fetch_with_retry(
        self,
        name: str,
        connector: ConnectorAdapter,
        token: Optional[str],
        call_pool: ThreadPoolExecutor,
    ) -> FetchPage:
        attempt = 0
        while True:
            try:
                return self._guarded_fetch(name, connector, token, call_pool)
            except ConnectorTransientError as e:
                if attempt >= self.settings.transient_retries:
                    raise
                delay = min(
                    self.settings.retry_backoff_seconds * (2 ** attempt),
                    self.settings.retry_backoff_max_seconds,
                )
                attempt += 1
                logger.warning(
                    f"{name}: transient failure ({e}), retry {attempt} in {delay:.1f}s"
                )
                self._sleep(delay)

    def _guarded_fetch(
        self,
        name: str,
        connector: ConnectorAdapter,
        token: Optional[str],
        call_pool: ThreadPoolExecutor,
    ) -> FetchPage:
        future = call_pool.submit(connector.fetch_transactions, token)
        try:
            return future.result(timeout=self.settings.call_timeout_seconds)
        except FuturesTimeout as e:
            future.cancel()
            raise ConnectorTimeout(
                f"{name} fetch exceeded {self.settings.call_timeout_seconds}s", source=name
            ) from e

    def _ingest(
        self, name: str, page: FetchPage, run_id: str, outcome: _ConnectorOutcome
    ) -> None:
        result = outcome.result
        ingested = self.canonicalizer.ingest_page(name, page.transactions, run_id)

        failures = list(ingested.failures)
        failures.extend(
            ItemFailure(run_id=run_id, connector=name, external_id=external_id, error=reason)
            for external_id, reason in page.item_errors
        )
        for failure in failures:
            self.store.record_item_failure(failure)

        result.pages += 1
        result.fetched += len(page.transactions) + len(page.item_errors)
        result.imported += ingested.created
        result.updated += ingested.updated
        result.skipped_duplicate += ingested.unchanged
        result.failed += len(failures)
        outcome.created_ids.extend(ingested.created_ids)

    def _finish_cursor(self, name: str, cursor: SyncCursor, result: ConnectorRunResult) -> None:
        """Record the connector's status and raise an alert past the failure threshold."""
        cursor = replace(cursor, last_run_status=result.status, updated_at=utcnow())
        if result.succeeded:
            cursor.consecutive_failures = 0
            cursor.last_error = None
        elif result.status != ConnectorRunStatus.CANCELLED:
            cursor.consecutive_failures += 1
            cursor.last_error = result.error
        self.store.save_cursor(cursor)

        threshold = self.settings.alert_failure_threshold
        failed = not result.succeeded and result.status != ConnectorRunStatus.CANCELLED
        if failed and threshold > 0 and cursor.consecutive_failures > threshold:
            logger.error(
                f"ALERT: {name} has failed {cursor.consecutive_failures} consecutive runs "
                f"(last: {cursor.last_error})"
            )
            if self.alert_hook is not None:
                self.alert_hook(name, cursor)
