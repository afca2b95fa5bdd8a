"""Utility modules."""

from .exceptions import (
    LedgerReconError,
    ConfigurationError,
    ValidationError,
    ErrorKind,
    ConnectorError,
    ConnectorAuthError,
    ConnectorTransientError,
    ConnectorTimeout,
    ConnectorRateLimited,
    ConnectorPermanentError,
    DedupConflict,
    MatchConflict,
    PushFailure,
    ReportGenerationError,
)
from .logging_config import setup_logging

__all__ = [
    "LedgerReconError",
    "ConfigurationError",
    "ValidationError",
    "ErrorKind",
    "ConnectorError",
    "ConnectorAuthError",
    "ConnectorTransientError",
    "ConnectorTimeout",
    "ConnectorRateLimited",
    "ConnectorPermanentError",
    "DedupConflict",
    "MatchConflict",
    "PushFailure",
    "ReportGenerationError",
    "setup_logging",
]
