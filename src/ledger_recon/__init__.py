"""Multi-source transaction sync and reconciliation engine."""

__version__ = "0.1.0"
