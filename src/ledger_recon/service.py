"""
Service facade wiring the engine components together.

This is the surface the CLI (and any other operator-facing layer) talks
to: trigger runs, push to the system of record, and query ledger state.
"""

from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Optional
import logging
import time

from .canonical.dedup import Canonicalizer
from .categorization.mapper import CategorizationResult, CategoryMapper
from .categorization.rules import FileRuleSource, RuleSource, StaticRuleSource
from .config import LedgerReconConfig
from .connectors.base import ConnectorAdapter
from .connectors.credentials import CredentialStore, EnvCredentialStore
from .connectors.registry import build_connectors
from .export.gateway import PushGateway, PushPassResult
from .matching.engine import ReconciliationMatcher
from .models.transaction import (
    CanonicalTransaction,
    ItemFailure,
    MatchStatus,
    ReconciliationRun,
    SyncCursor,
)
from .store.base import LedgerStore
from .store.sql import SqlLedgerStore
from .sync.orchestrator import AlertHook, SyncOrchestrator
from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class LedgerReconService:
    """Entry point for running and inspecting the reconciliation engine."""

    def __init__(
        self,
        config: LedgerReconConfig,
        store: Optional[LedgerStore] = None,
        credentials: Optional[CredentialStore] = None,
        connectors: Optional[dict[str, ConnectorAdapter]] = None,
        rule_source: Optional[RuleSource] = None,
        alert_hook: Optional[AlertHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the service.

        Args:
            config: Application configuration
            store: Ledger store; a SqlLedgerStore on ``config.store.database_url`` by default
            credentials: Credential store; environment variables by default
            connectors: Connector adapters; built from config when omitted
            rule_source: Chart of accounts source; from config when omitted
            alert_hook: Called when a connector keeps failing
            sleep: Used for retry backoff
        """
        self.config = config
        self.store = store or SqlLedgerStore(config.store.database_url)
        if connectors is None:
            connectors = build_connectors(config, credentials or EnvCredentialStore())
        self.connectors = connectors

        if rule_source is None:
            rules_file = config.categorization.rules_file
            rule_source = FileRuleSource(Path(rules_file)) if rules_file else StaticRuleSource()

        self.canonicalizer = Canonicalizer(
            self.store, {name: c.amount_convention for name, c in connectors.items()}
        )
        self.mapper = CategoryMapper(self.store, rule_source)
        self.matcher = ReconciliationMatcher(self.store, config)
        self.orchestrator = SyncOrchestrator(
            self.store,
            connectors,
            self.canonicalizer,
            self.mapper,
            self.matcher,
            config.sync,
            alert_hook=alert_hook,
            sleep=sleep,
        )

        target = connectors.get(config.export.target)
        self.gateway = PushGateway(self.store, target, config.export, sleep=sleep) if target else None

    def close(self) -> None:
        self.orchestrator.shutdown(wait=True)

    # Runs

    def run_now(self) -> ReconciliationRun:
        """Run a full sync and reconciliation synchronously."""
        return self.orchestrator.run()

    def submit_run(self) -> tuple[str, "Future[ReconciliationRun]"]:
        """Start a run in the background; observe it via ``get_run``."""
        return self.orchestrator.submit()

    def cancel_run(self, run_id: str) -> bool:
        return self.orchestrator.cancel(run_id)

    def get_run(self, run_id: str) -> Optional[ReconciliationRun]:
        return self.store.get_run(run_id)

    def list_runs(self, limit: int = 20) -> list[ReconciliationRun]:
        return self.store.list_runs(limit)

    # Ledger queries

    def get_transaction(self, canonical_id: str) -> Optional[CanonicalTransaction]:
        return self.store.get(canonical_id)

    def unmatched(self, source: Optional[str] = None) -> list[CanonicalTransaction]:
        return self.store.query(source=source, match_status=MatchStatus.UNMATCHED)

    def pending_review(self) -> list[CanonicalTransaction]:
        return self.store.query(match_status=MatchStatus.PENDING_REVIEW)

    def needs_categorization(self) -> list[CanonicalTransaction]:
        return self.mapper.needs_categorization()

    def connector_status(self) -> list[SyncCursor]:
        """Last known state of every connector that has synced at least once."""
        return self.store.list_cursors()

    def item_failures(
        self, connector: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ItemFailure]:
        return self.store.list_item_failures(connector=connector, run_id=run_id)

    def test_connections(self) -> dict[str, tuple[bool, str]]:
        return {name: c.test_connection() for name, c in sorted(self.connectors.items())}

    # Operator actions

    def manual_match(self, first_id: str, second_id: str) -> None:
        self.matcher.manual_match(first_id, second_id)

    def manual_unmatch(self, canonical_id: str) -> Optional[str]:
        return self.matcher.manual_unmatch(canonical_id)

    def set_category(self, canonical_id: str, category_id: str) -> CanonicalTransaction:
        return self.mapper.set_manual_category(canonical_id, category_id)

    def recategorize(self) -> CategorizationResult:
        return self.mapper.recategorize()

    # Export

    def _require_gateway(self) -> PushGateway:
        if self.gateway is None:
            raise ConfigurationError(
                f"Export target {self.config.export.target!r} is not an enabled connector"
            )
        return self.gateway

    def push(self) -> PushPassResult:
        return self._require_gateway().run_pass()

    def stuck_pushes(self) -> list[CanonicalTransaction]:
        return self._require_gateway().list_stuck()

    def requeue(self, canonical_id: str) -> None:
        self._require_gateway().requeue(canonical_id)
