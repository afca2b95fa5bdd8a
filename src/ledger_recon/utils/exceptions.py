"""Custom exceptions for the ledger reconciliation engine."""

from enum import Enum
from typing import Any, Optional


class LedgerReconError(Exception):
    """Base exception for ledger reconciliation errors."""

    pass


class ConfigurationError(LedgerReconError):
    """Error in configuration."""

    pass


class ValidationError(LedgerReconError):
    """Data validation error (bad operator input, malformed record)."""

    pass


class ErrorKind(Enum):
    """Classification of a connector failure."""

    TRANSIENT = "transient"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"


class ConnectorError(LedgerReconError):
    """
    Error raised by a connector adapter.

    ``partial`` carries whatever records were fetched before the failure.
    Callers must treat the page as incomplete and never advance the cursor.
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        partial: Optional[list[Any]] = None,
    ):
        super().__init__(message)
        self.source = source
        self.partial = partial or []


class ConnectorAuthError(ConnectorError):
    """Credentials missing, rejected or expired."""

    kind = ErrorKind.AUTH_FAILURE


class ConnectorTransientError(ConnectorError):
    """Network error, timeout or 5xx; retried on the next run."""

    kind = ErrorKind.TRANSIENT


class ConnectorTimeout(ConnectorTransientError):
    """A connector call exceeded its timeout."""

    pass


class ConnectorRateLimited(ConnectorError):
    """The platform throttled us; remaining pages are deferred."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        partial: Optional[list[Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, source=source, partial=partial)
        self.retry_after = retry_after


class ConnectorPermanentError(ConnectorError):
    """Request rejected in a way that retrying will not fix."""

    kind = ErrorKind.PERMANENT


class DedupConflict(LedgerReconError):
    """Two different (source, external_id) pairs produced the same canonical id."""

    pass


class MatchConflict(LedgerReconError):
    """A manual match or unmatch lost a race with another writer."""

    pass


class PushFailure(LedgerReconError):
    """A single transaction was rejected by the system of record."""

    def __init__(self, message: str, canonical_id: str, retryable: bool = True):
        super().__init__(message)
        self.canonical_id = canonical_id
        self.retryable = retryable


class ReportGenerationError(LedgerReconError):
    """Error generating a report."""

    pass
