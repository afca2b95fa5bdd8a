"""
Deduplication and canonicalization of raw connector records.

A raw record's identity is its (source, external_id) pair. The canonical id
is derived from that pair alone, so fetching the same record twice (overlapping
pages, a retried run) always lands on the same ledger row.
"""

from dataclasses import dataclass, field
from typing import Optional
import hashlib
import logging

from ..connectors.base import AmountConvention
from ..models.transaction import (
    CanonicalTransaction,
    ItemFailure,
    RawTransaction,
    SourceRef,
    UpsertOutcome,
)
from ..store.base import LedgerStore
from ..utils.exceptions import DedupConflict, ValidationError
from .money import to_minor_units

logger = logging.getLogger(__name__)

CANONICAL_ID_LENGTH = 32


def canonical_id(source: str, external_id: str) -> str:
    """Stable canonical id for a (source, external_id) pair."""
    digest = hashlib.sha256(f"{source}\x1f{external_id}".encode("utf-8")).hexdigest()
    return digest[:CANONICAL_ID_LENGTH]


@dataclass
class PageIngestResult:
    """Counters for one page pushed through the canonicalizer."""

    created_ids: list[str] = field(default_factory=list)
    updated: int = 0
    unchanged: int = 0
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def created(self) -> int:
        return len(self.created_ids)

    @property
    def failed(self) -> int:
        return len(self.failures)


class Canonicalizer:
    """Turns raw records into canonical transactions and upserts them."""

    def __init__(self, store: LedgerStore, conventions: dict[str, AmountConvention]):
        """
        Initialize the canonicalizer.

        Args:
            store: Ledger store to upsert into
            conventions: Amount sign convention per connector name
        """
        self.store = store
        self.conventions = conventions

    def canonicalize(
        self, raw: RawTransaction, run_id: Optional[str] = None
    ) -> CanonicalTransaction:
        """
        Normalize one raw record.

        Amounts become signed minor units with outflows negative, whatever
        the source's own convention.

        Raises:
            ValidationError: If the record cannot be normalized
        """
        if not raw.external_id:
            raise ValidationError(f"{raw.source} record without an external id")
        convention = self.conventions.get(raw.source)
        if convention is None:
            raise ValidationError(f"No amount convention registered for source {raw.source}")

        currency = (raw.currency or "").upper()
        if len(currency) != 3:
            raise ValidationError(f"Invalid currency {raw.currency!r} on {raw.external_id}")

        amount = to_minor_units(raw.amount, currency)
        if convention == AmountConvention.OUTFLOW_POSITIVE:
            amount = -amount

        return CanonicalTransaction(
            canonical_id=canonical_id(raw.source, raw.external_id),
            source_refs=frozenset({SourceRef(raw.source, raw.external_id)}),
            amount=amount,
            currency=currency,
            posted_date=raw.timestamp.date(),
            description=" ".join(raw.raw_description.split()),
            posted=raw.posted,
            raw_category=(raw.raw_category or "").strip() or None,
            created_run_id=run_id,
        )

    def ingest_page(
        self, source: str, raws: list[RawTransaction], run_id: str
    ) -> PageIngestResult:
        """
        Canonicalize and upsert a page of raw records.

        Records that fail validation or collide with another record's id are
        skipped and reported; the rest of the page is still ingested. Store
        errors propagate so the caller can leave the cursor untouched.
        """
        result = PageIngestResult()
        for raw in raws:
            try:
                txn = self.canonicalize(raw, run_id)
                outcome = self.store.upsert(txn)
            except (ValidationError, DedupConflict) as e:
                logger.warning(f"Skipping {source} record {raw.external_id}: {e}")
                result.failures.append(
                    ItemFailure(
                        run_id=run_id,
                        connector=source,
                        external_id=raw.external_id,
                        error=str(e),
                    )
                )
                continue

            if outcome == UpsertOutcome.CREATED:
                result.created_ids.append(txn.canonical_id)
            elif outcome == UpsertOutcome.UPDATED:
                result.updated += 1
            else:
                result.unchanged += 1

        logger.debug(
            f"{source}: page ingested, {result.created} created, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.failed} failed"
        )
        return result
