"""Data models for ingestion, reconciliation and run history."""

from .transaction import (
    MatchStatus,
    PushStatus,
    CategorySource,
    UpsertOutcome,
    ConnectorRunStatus,
    RunStatus,
    ExternalAccount,
    RawTransaction,
    SourceRef,
    CanonicalTransaction,
    CategoryRule,
    COACategory,
    ChartOfAccounts,
    SyncCursor,
    ConnectorRunResult,
    ReconciliationRun,
    ItemFailure,
    utcnow,
)

__all__ = [
    "MatchStatus",
    "PushStatus",
    "CategorySource",
    "UpsertOutcome",
    "ConnectorRunStatus",
    "RunStatus",
    "ExternalAccount",
    "RawTransaction",
    "SourceRef",
    "CanonicalTransaction",
    "CategoryRule",
    "COACategory",
    "ChartOfAccounts",
    "SyncCursor",
    "ConnectorRunResult",
    "ReconciliationRun",
    "ItemFailure",
    "utcnow",
]
