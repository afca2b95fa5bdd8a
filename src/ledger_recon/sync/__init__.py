"""Sync orchestration."""

from .orchestrator import SyncOrchestrator, overall_status

__all__ = ["SyncOrchestrator", "overall_status"]
