"""Data models for ingested transactions, ledger state and run history."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware current time used for all stored timestamps."""
    return datetime.now(timezone.utc)


class MatchStatus(Enum):
    """Reconciliation state of a canonical transaction."""

    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PENDING_REVIEW = "pending_review"


class PushStatus(Enum):
    """Export state towards the system of record."""

    PENDING = "pending"
    PUSHED = "pushed"
    FAILED = "failed"  # Retries exhausted; needs an operator


class CategorySource(Enum):
    """Where a transaction's category came from."""

    RULE = "rule"
    VENDOR = "vendor"
    MANUAL = "manual"


class UpsertOutcome(Enum):
    """Result of an idempotent upsert."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class ConnectorRunStatus(Enum):
    """How a connector's fetch loop ended within one run."""

    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    TRANSIENT_FAILURE = "transient_failure"
    RATE_LIMITED = "rate_limited"
    PERMANENT_FAILURE = "permanent_failure"
    CANCELLED = "cancelled"


class RunStatus(Enum):
    """Overall status of a reconciliation run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ExternalAccount:
    """An account as reported by an external platform."""

    source: str
    external_id: str
    display_name: str
    currency: str
    # Minor units, same sign convention as transactions
    balance_snapshot: Optional[int] = None


@dataclass
class RawTransaction:
    """
    A transaction as fetched from a connector, before canonicalization.

    ``amount`` is in major units (e.g. dollars) and carries the sign
    convention declared by the connector that produced it. It is never
    persisted as-is.
    """

    source: str
    external_id: str
    timestamp: datetime
    amount: Decimal
    currency: str
    raw_description: str = ""
    raw_category: Optional[str] = None
    posted: bool = True


@dataclass(frozen=True, order=True)
class SourceRef:
    """Identity of a record in its originating platform."""

    source: str
    external_id: str


@dataclass
class CanonicalTransaction:
    """
    Deduplicated internal representation of one financial event.

    Amounts are signed integers in minor currency units: outflows are
    negative, inflows positive.
    """

    canonical_id: str
    source_refs: frozenset[SourceRef]
    amount: int
    currency: str
    posted_date: date
    description: str = ""
    posted: bool = True
    # Vendor-supplied category, kept as the mapper's fallback input
    raw_category: Optional[str] = None

    # Owned by the category mapper
    category_id: Optional[str] = None
    category_source: Optional[CategorySource] = None

    # Owned by the reconciliation matcher
    match_status: MatchStatus = MatchStatus.UNMATCHED
    matched_transaction_id: Optional[str] = None

    # Owned by the push gateway
    push_status: PushStatus = PushStatus.PENDING
    push_attempts: int = 0
    push_error: Optional[str] = None

    created_run_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def primary_ref(self) -> SourceRef:
        """The (source, external_id) pair the canonical id was derived from."""
        return min(self.source_refs)

    @property
    def source(self) -> str:
        return self.primary_ref.source

    @property
    def external_id(self) -> str:
        return self.primary_ref.external_id


@dataclass(frozen=True)
class CategoryRule:
    """Maps descriptions matching ``pattern`` to ``category_id``."""

    pattern: str
    category_id: str


@dataclass
class COACategory:
    """A node in the chart of accounts."""

    id: str
    name: str
    parent_id: Optional[str] = None
    matching_rules: list[CategoryRule] = field(default_factory=list)


@dataclass
class ChartOfAccounts:
    """
    Category taxonomy plus the ordered rule list used by the category mapper.

    ``raw_category_map`` maps ``source -> {vendor category -> category id}``.
    """

    categories: dict[str, COACategory] = field(default_factory=dict)
    rules: list[CategoryRule] = field(default_factory=list)
    raw_category_map: dict[str, dict[str, str]] = field(default_factory=dict)

    def is_leaf(self, category_id: str) -> bool:
        """A known category with no children."""
        if category_id not in self.categories:
            return False
        return not any(c.parent_id == category_id for c in self.categories.values())

    def leaves(self) -> list[COACategory]:
        return [c for c in self.categories.values() if self.is_leaf(c.id)]


@dataclass
class SyncCursor:
    """Bookmark recording how far a connector's history has been ingested."""

    connector: str
    last_synced_cursor_token: Optional[str] = None
    last_run_status: Optional[ConnectorRunStatus] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    updated_at: Optional[datetime] = None


@dataclass
class ConnectorRunResult:
    """Per-connector counters for one reconciliation run."""

    fetched: int = 0
    imported: int = 0
    updated: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    pages: int = 0
    status: ConnectorRunStatus = ConnectorRunStatus.SUCCESS
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ConnectorRunStatus.SUCCESS


@dataclass
class ReconciliationRun:
    """Summary record of one sync + reconciliation run."""

    id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    per_connector_result: dict[str, ConnectorRunResult] = field(default_factory=dict)
    unmatched_count: int = 0
    categorized_count: int = 0
    needs_categorization_count: int = 0
    matched_pairs: int = 0
    pending_review_count: int = 0
    overall_status: RunStatus = RunStatus.RUNNING
    cancelled: bool = False

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class ItemFailure:
    """A single record that could not be ingested."""

    run_id: str
    connector: str
    external_id: Optional[str]
    error: str
    recorded_at: datetime = field(default_factory=utcnow)
