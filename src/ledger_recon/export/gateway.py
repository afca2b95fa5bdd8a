"""
Push/export gateway.

Pushes reconciled, categorized transactions to the system of record. Every
push is keyed by the canonical id, so retrying an item that actually landed
the first time is harmless. Items that keep failing are parked as ``failed``
(stuck) for an operator to requeue.
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import time

from ..config import ExportConfig
from ..connectors.base import ConnectorAdapter, PushResult
from ..models.transaction import CanonicalTransaction, MatchStatus, PushStatus
from ..store.base import LedgerStore
from ..utils.exceptions import (
    ConnectorAuthError,
    ConnectorError,
    ConnectorPermanentError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class PushPassResult:
    """Counters from one push pass."""

    selected: int = 0
    pushed: int = 0
    already_in_target: int = 0
    covered_by_partner: int = 0
    waiting_on_partner: int = 0
    retry_later: int = 0
    stuck: int = 0
    aborted: bool = False
    error: Optional[str] = None


class PushGateway:
    """Exports eligible ledger transactions through the target connector."""

    def __init__(
        self,
        store: LedgerStore,
        target: ConnectorAdapter,
        settings: ExportConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the gateway.

        Args:
            store: Ledger store
            target: Connector for the system of record
            settings: Export section of the configuration
            sleep: Used for retry backoff
        """
        self.store = store
        self.target = target
        self.settings = settings
        self._sleep = sleep

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (0-based)."""
        return min(
            self.settings.backoff_base_seconds * (2 ** retry),
            self.settings.backoff_max_seconds,
        )

    def eligible(self) -> list[CanonicalTransaction]:
        """Pending, categorized transactions that are not awaiting review."""
        return [
            txn
            for txn in self.store.query(push_status=PushStatus.PENDING, uncategorized=False)
            if txn.match_status != MatchStatus.PENDING_REVIEW
        ]

    def _partner(self, txn: CanonicalTransaction) -> Optional[CanonicalTransaction]:
        if txn.match_status == MatchStatus.MATCHED and txn.matched_transaction_id:
            return self.store.get(txn.matched_transaction_id)
        return None

    def run_pass(self) -> PushPassResult:
        """
        Push every eligible transaction.

        A matched pair is one real-world event and reaches the target once.
        If either side already lives in the target nothing is sent. Otherwise
        the side with the lower canonical id is pushed and its partner is
        marked pushed once that push has succeeded.

        Returns:
            PushPassResult; ``aborted`` is set when the target rejected our
            credentials, in which case untouched items stay pending
        """
        result = PushPassResult()
        to_push: list[CanonicalTransaction] = []
        followers: list[CanonicalTransaction] = []

        for txn in self.eligible():
            result.selected += 1
            partner = self._partner(txn)
            if txn.source == self.target.name or (
                partner is not None and partner.source == self.target.name
            ):
                self.store.update_push_status(txn.canonical_id, PushStatus.PUSHED, txn.push_attempts)
                result.already_in_target += 1
            elif partner is not None and partner.canonical_id < txn.canonical_id:
                followers.append(txn)
            else:
                to_push.append(txn)

        size = max(1, self.settings.batch_size)
        for start in range(0, len(to_push), size):
            batch = to_push[start:start + size]
            try:
                self._push_batch(batch, result)
            except ConnectorAuthError as e:
                result.aborted = True
                result.error = str(e)
                result.retry_later = len(to_push) - result.pushed - result.stuck
                logger.error(f"Push to {self.target.name} aborted: {e}")
                break

        for txn in followers:
            partner = self._partner(txn)
            if partner is not None and partner.push_status == PushStatus.PUSHED:
                self.store.update_push_status(txn.canonical_id, PushStatus.PUSHED, txn.push_attempts)
                result.covered_by_partner += 1
            else:
                result.waiting_on_partner += 1

        logger.info(
            f"Push pass to {self.target.name}: {result.pushed} pushed, "
            f"{result.already_in_target} already present, {result.covered_by_partner} covered by a match, "
            f"{result.waiting_on_partner} waiting on a match, {result.retry_later} to retry, "
            f"{result.stuck} stuck"
        )
        return result

    def _push_batch(self, batch: list[CanonicalTransaction], result: PushPassResult) -> None:
        """
        Push one batch, retrying failed items with exponential backoff.

        Raises:
            ConnectorAuthError: Propagated so the pass can stop
        """
        attempts = {txn.canonical_id: txn.push_attempts for txn in batch}
        pending = list(batch)
        retry = 0

        while pending:
            try:
                outcomes = self._results_by_id(pending, self.target.push_transactions(pending))
            except ConnectorAuthError:
                raise
            except ConnectorPermanentError as e:
                outcomes = {
                    t.canonical_id: PushResult(t.canonical_id, ok=False, error=str(e))
                    for t in pending
                }
            except ConnectorError as e:
                # Transient or throttled: the whole batch is retried
                outcomes = {
                    t.canonical_id: PushResult(t.canonical_id, ok=False, error=str(e), retryable=True)
                    for t in pending
                }

            retry_items = []
            for txn in pending:
                outcome = outcomes[txn.canonical_id]
                attempts[txn.canonical_id] += 1
                count = attempts[txn.canonical_id]

                if outcome.ok:
                    self.store.update_push_status(txn.canonical_id, PushStatus.PUSHED, count)
                    result.pushed += 1
                elif outcome.retryable and count < self.settings.max_attempts:
                    self.store.update_push_status(
                        txn.canonical_id, PushStatus.PENDING, count, outcome.error
                    )
                    retry_items.append(txn)
                else:
                    self.store.update_push_status(
                        txn.canonical_id, PushStatus.FAILED, count, outcome.error
                    )
                    result.stuck += 1
                    logger.warning(
                        f"Push of {txn.canonical_id} stuck after {count} attempt(s): {outcome.error}"
                    )

            pending = retry_items
            if pending:
                delay = self.backoff_delay(retry)
                retry += 1
                logger.info(f"Retrying {len(pending)} push(es) in {delay:.1f}s")
                self._sleep(delay)

    @staticmethod
    def _results_by_id(
        batch: list[CanonicalTransaction], results: list[PushResult]
    ) -> dict[str, PushResult]:
        by_id = {r.canonical_id: r for r in results}
        for txn in batch:
            by_id.setdefault(
                txn.canonical_id,
                PushResult(txn.canonical_id, ok=False, error="No result returned", retryable=True),
            )
        return by_id

    def list_stuck(self) -> list[CanonicalTransaction]:
        return self.store.query(push_status=PushStatus.FAILED)

    def requeue(self, canonical_id: str) -> None:
        """
        Return a stuck transaction to the push queue with a fresh attempt budget.

        Raises:
            ValidationError: If the transaction is unknown or not stuck
        """
        txn = self.store.get(canonical_id)
        if txn is None:
            raise ValidationError(f"Unknown transaction {canonical_id}")
        if txn.push_status != PushStatus.FAILED:
            raise ValidationError(f"{canonical_id} is {txn.push_status.value}, not failed")
        self.store.update_push_status(canonical_id, PushStatus.PENDING, 0, None)
        logger.info(f"Requeued {canonical_id} for push")
