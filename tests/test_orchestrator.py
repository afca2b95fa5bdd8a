import threading

import pytest

from ledger_recon.canonical import Canonicalizer, canonical_id
from ledger_recon.categorization import CategoryMapper
from ledger_recon.connectors.base import AmountConvention
from ledger_recon.matching import ReconciliationMatcher
from ledger_recon.models.transaction import (
    ConnectorRunResult,
    ConnectorRunStatus,
    MatchStatus,
    RunStatus,
)
from ledger_recon.sync import SyncOrchestrator, overall_status
from ledger_recon.utils.exceptions import (
    ConnectorAuthError,
    ConnectorRateLimited,
    ConnectorTransientError,
)

from fakes import FakeConnector, page, raw


def _orchestrator(store, config, *connectors, sleeps=None, alert_hook=None):
    by_name = {c.name: c for c in connectors}
    canonicalizer = Canonicalizer(store, {n: c.amount_convention for n, c in by_name.items()})
    return SyncOrchestrator(
        store,
        by_name,
        canonicalizer,
        CategoryMapper(store),
        ReconciliationMatcher(store, config),
        config.sync,
        alert_hook=alert_hook,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def _bank(*script):
    return FakeConnector("mercury", list(script))


def _books(*script):
    return FakeConnector("wave", list(script), convention=AmountConvention.OUTFLOW_POSITIVE)


def _property(*script):
    return FakeConnector("doorloop", list(script))


def test_full_run_syncs_categorizes_and_matches(store, config) -> None:
    bank = _bank(page(raw("mercury", "mer_001", "-1200.00", "2024-03-01", "Rent payment"),
                      next_cursor="1"))
    books = _books(page(raw("wave", "wav_777", "1200.00", "2024-03-02", "Rent payment"),
                        next_cursor="1"))
    orchestrator = _orchestrator(store, config, bank, books, _property())

    run = orchestrator.run()

    assert run.overall_status == RunStatus.SUCCESS
    assert run.matched_pairs == 1
    assert run.categorized_count == 2
    assert run.unmatched_count == 0
    assert run.per_connector_result["mercury"].imported == 1
    assert run.per_connector_result["doorloop"].pages == 1
    assert run.completed_at is not None
    assert store.get_run(run.id).overall_status == RunStatus.SUCCESS
    assert store.get_cursor("mercury").last_synced_cursor_token == "1"
    assert store.get(canonical_id("mercury", "mer_001")).match_status == MatchStatus.MATCHED
    orchestrator.shutdown()


def test_one_failing_connector_does_not_block_the_others(store, config) -> None:
    bank = _bank(page(raw("mercury", "m1", "-50", "2024-03-01")))
    books = _books(page(raw("wave", "w1", "50", "2024-03-01")))
    broken = _property(ConnectorAuthError("HTTP 401", source="doorloop"))
    orchestrator = _orchestrator(store, config, bank, books, broken)

    run = orchestrator.run()

    assert run.overall_status == RunStatus.PARTIAL
    assert run.per_connector_result["doorloop"].status == ConnectorRunStatus.AUTH_FAILURE
    assert run.per_connector_result["mercury"].succeeded
    assert run.matched_pairs == 1
    cursor = store.get_cursor("doorloop")
    assert cursor.last_synced_cursor_token is None
    assert cursor.consecutive_failures == 1
    assert cursor.last_run_status == ConnectorRunStatus.AUTH_FAILURE
    orchestrator.shutdown()


def test_every_connector_failing_fails_the_run(memory_store, config) -> None:
    orchestrator = _orchestrator(
        memory_store,
        config,
        _bank(ConnectorAuthError("bad key")),
        _books(ConnectorRateLimited("slow down", retry_after=30)),
    )

    run = orchestrator.run()

    assert run.overall_status == RunStatus.FAILED
    assert run.per_connector_result["wave"].status == ConnectorRunStatus.RATE_LIMITED
    orchestrator.shutdown()


def test_overall_status() -> None:
    ok = ConnectorRunResult()
    failed = ConnectorRunResult(status=ConnectorRunStatus.PERMANENT_FAILURE)
    cancelled = ConnectorRunResult(status=ConnectorRunStatus.CANCELLED)

    assert overall_status({"a": ok, "b": ok}) == RunStatus.SUCCESS
    assert overall_status({"a": ok, "b": failed}) == RunStatus.PARTIAL
    assert overall_status({"a": failed, "b": failed}) == RunStatus.FAILED
    assert overall_status({"a": cancelled, "b": failed}) == RunStatus.PARTIAL


def test_cursor_stays_put_when_a_page_fails_part_way(store, config) -> None:
    config.sync.transient_retries = 0
    partial_records = [raw("mercury", "m3", "-30", "2024-03-03")]
    bank = _bank(
        page(raw("mercury", "m1", "-10", "2024-03-01"), raw("mercury", "m2", "-20", "2024-03-02"),
             next_cursor="2", has_more=True),
        ConnectorTransientError("connection reset", source="mercury", partial=partial_records),
    )
    orchestrator = _orchestrator(store, config, bank)

    first = orchestrator.run()

    assert first.per_connector_result["mercury"].status == ConnectorRunStatus.TRANSIENT_FAILURE
    assert store.get_cursor("mercury").last_synced_cursor_token == "2"
    # Records from the failed page are not kept
    assert store.get(canonical_id("mercury", "m3")) is None

    bank.script = [page(raw("mercury", "m3", "-30", "2024-03-03"), next_cursor="3")]
    second = orchestrator.run()

    assert bank.fetch_calls == [None, "2", "2"]
    assert second.per_connector_result["mercury"].imported == 1
    assert store.get_cursor("mercury").last_synced_cursor_token == "3"
    assert store.get_cursor("mercury").consecutive_failures == 0
    orchestrator.shutdown()


def test_transient_errors_are_retried_with_backoff(memory_store, config) -> None:
    sleeps = []
    bank = _bank(
        ConnectorTransientError("HTTP 502"),
        ConnectorTransientError("HTTP 503"),
        page(raw("mercury", "m1", "-10", "2024-03-01")),
    )
    orchestrator = _orchestrator(memory_store, config, bank, sleeps=sleeps)

    run = orchestrator.run()

    assert run.overall_status == RunStatus.SUCCESS
    assert sleeps == [0.5, 1.0]
    assert bank.fetch_calls == [None, None, None]
    orchestrator.shutdown()


def test_hung_call_times_out_as_a_transient_failure(memory_store, config) -> None:
    config.sync.call_timeout_seconds = 0.05
    config.sync.transient_retries = 0
    release = threading.Event()
    hung = FakeConnector("mercury", block=release)
    orchestrator = _orchestrator(memory_store, config, hung, _books())

    try:
        run = orchestrator.run()
    finally:
        release.set()

    result = run.per_connector_result["mercury"]
    assert result.status == ConnectorRunStatus.TRANSIENT_FAILURE
    assert "exceeded" in result.error
    assert run.per_connector_result["wave"].succeeded
    assert run.overall_status == RunStatus.PARTIAL
    orchestrator.shutdown()


def test_unexpected_connector_bug_is_isolated(memory_store, config) -> None:
    orchestrator = _orchestrator(
        memory_store, config, _bank(RuntimeError("boom")), _books(page(raw("wave", "w1", "5", "2024-03-01")))
    )

    run = orchestrator.run()

    assert run.per_connector_result["mercury"].status == ConnectorRunStatus.PERMANENT_FAILURE
    assert "boom" in run.per_connector_result["mercury"].error
    assert run.per_connector_result["wave"].imported == 1
    orchestrator.shutdown()


def test_page_limit_defers_remaining_pages(memory_store, config) -> None:
    config.sync.max_pages_per_run = 2
    bank = _bank(
        *[
            page(raw("mercury", f"m{i}", "-1", "2024-03-01"), next_cursor=str(i + 1), has_more=True)
            for i in range(3)
        ]
    )
    orchestrator = _orchestrator(memory_store, config, bank)

    first = orchestrator.run()
    assert first.per_connector_result["mercury"].pages == 2
    assert memory_store.get_cursor("mercury").last_synced_cursor_token == "2"

    orchestrator.run()
    assert bank.fetch_calls[2] == "2"
    assert memory_store.count(source="mercury") == 3
    orchestrator.shutdown()


def test_resync_of_the_same_page_is_a_no_op(store, config) -> None:
    same_page = page(raw("mercury", "m1", "-10", "2024-03-01"), raw("mercury", "m2", "-20", "2024-03-01"))
    bank = _bank(same_page, same_page)
    orchestrator = _orchestrator(store, config, bank)

    orchestrator.run()
    second = orchestrator.run()

    assert second.per_connector_result["mercury"].imported == 0
    assert second.per_connector_result["mercury"].skipped_duplicate == 2
    assert store.count() == 2
    orchestrator.shutdown()


def test_item_failures_are_recorded_and_counted(memory_store, config) -> None:
    bank = _bank(
        page(
            raw("mercury", "m1", "-10", "2024-03-01"),
            raw("mercury", "m2", "-10", "2024-03-01", currency="X"),
            item_errors=[("m3", "Not an amount: 'abc'")],
        )
    )
    orchestrator = _orchestrator(memory_store, config, bank)

    run = orchestrator.run()

    result = run.per_connector_result["mercury"]
    assert (result.fetched, result.imported, result.failed) == (3, 1, 2)
    assert result.succeeded
    failures = memory_store.list_item_failures(run_id=run.id)
    assert sorted(f.external_id for f in failures) == ["m2", "m3"]
    orchestrator.shutdown()


def test_unrepresentable_amount_is_skipped_and_the_cursor_advances(store, config) -> None:
    bank = _bank(
        page(
            raw("mercury", "m1", "-5", "2024-03-01"),
            raw("mercury", "m2", "NaN", "2024-03-01"),
            next_cursor="2",
        )
    )
    orchestrator = _orchestrator(store, config, bank)

    run = orchestrator.run()

    result = run.per_connector_result["mercury"]
    assert result.status == ConnectorRunStatus.SUCCESS
    assert (result.imported, result.failed) == (1, 1)
    assert store.get_cursor("mercury").last_synced_cursor_token == "2"
    assert [f.external_id for f in store.list_item_failures(run_id=run.id)] == ["m2"]
    orchestrator.shutdown()


def test_cancel_before_fetching_leaves_cursors_untouched(memory_store, config) -> None:
    alerts = []
    config.sync.alert_failure_threshold = 1
    bank = _bank(page(raw("mercury", "m1", "-10", "2024-03-01")))
    orchestrator = _orchestrator(memory_store, config, bank, alert_hook=lambda *a: alerts.append(a))
    cancel = threading.Event()
    cancel.set()

    run = orchestrator.run(cancel_event=cancel)

    assert run.cancelled is True
    assert run.per_connector_result["mercury"].status == ConnectorRunStatus.CANCELLED
    assert run.overall_status == RunStatus.PARTIAL
    assert bank.fetch_calls == []
    assert memory_store.get_cursor("mercury").consecutive_failures == 0
    assert alerts == []
    orchestrator.shutdown()


def test_cancel_mid_run_keeps_the_page_in_flight(memory_store, config) -> None:
    cancel = threading.Event()
    bank = FakeConnector(
        "mercury",
        [
            page(raw("mercury", "m1", "-10", "2024-03-01"), next_cursor="1", has_more=True),
            page(raw("mercury", "m2", "-10", "2024-03-02"), next_cursor="2", has_more=False),
        ],
        on_fetch=lambda cursor: cancel.set(),
    )
    orchestrator = _orchestrator(memory_store, config, bank)

    run = orchestrator.run(cancel_event=cancel)

    assert bank.fetch_calls == [None]
    assert run.per_connector_result["mercury"].imported == 1
    assert run.per_connector_result["mercury"].status == ConnectorRunStatus.CANCELLED
    assert memory_store.get_cursor("mercury").last_synced_cursor_token == "1"
    orchestrator.shutdown()


def test_submitted_run_can_be_cancelled_while_in_flight(memory_store, config) -> None:
    started = threading.Event()
    release = threading.Event()

    def pause(cursor):
        started.set()
        release.wait(timeout=5)

    bank = FakeConnector(
        "mercury",
        [
            page(raw("mercury", "m1", "-10", "2024-03-01"), next_cursor="1", has_more=True),
            page(raw("mercury", "m2", "-10", "2024-03-02"), next_cursor="2", has_more=False),
        ],
        on_fetch=pause,
    )
    orchestrator = _orchestrator(memory_store, config, bank)

    run_id, future = orchestrator.submit()
    assert started.wait(timeout=5)
    assert memory_store.get_run(run_id).overall_status == RunStatus.RUNNING
    assert orchestrator.cancel(run_id) is True
    release.set()
    run = future.result(timeout=10)

    assert run.id == run_id
    assert run.cancelled is True
    assert bank.fetch_calls == [None]
    assert memory_store.get_run(run_id).completed_at is not None
    assert orchestrator.cancel(run_id) is False
    orchestrator.shutdown()


def test_alert_fires_once_failures_exceed_the_threshold(memory_store, config) -> None:
    config.sync.alert_failure_threshold = 2
    alerts = []
    bank = _bank(*[ConnectorAuthError("expired") for _ in range(4)])
    orchestrator = _orchestrator(
        memory_store, config, bank, alert_hook=lambda name, cursor: alerts.append((name, cursor.consecutive_failures))
    )

    orchestrator.run()
    orchestrator.run()
    assert alerts == []
    orchestrator.run()
    assert alerts == [("mercury", 3)]
    orchestrator.run()
    assert alerts == [("mercury", 3), ("mercury", 4)]

    orchestrator.run()  # Script exhausted: the connector recovers
    cursor = memory_store.get_cursor("mercury")
    assert cursor.consecutive_failures == 0
    assert cursor.last_error is None
    orchestrator.shutdown()


@pytest.mark.parametrize("uncategorizable", [True, False])
def test_run_counts_transactions_needing_categorization(memory_store, config, uncategorizable) -> None:
    description = "XYZ1234 POS" if uncategorizable else "Home Depot supplies"
    bank = _bank(page(raw("mercury", "m1", "-10", "2024-03-01", description)))
    orchestrator = _orchestrator(memory_store, config, bank)

    run = orchestrator.run()

    assert run.needs_categorization_count == (1 if uncategorizable else 0)
    orchestrator.shutdown()
