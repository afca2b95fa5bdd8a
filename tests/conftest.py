"""Pytest configuration.

Makes the ``src`` layout and the shared test helpers importable without an
editable install, and provides the ledger store fixtures every suite uses.
"""

import sys
from pathlib import Path

import pytest

_TESTS_DIR = Path(__file__).resolve().parent
_ROOT = _TESTS_DIR.parent
sys.path[:0] = [
    p for p in [str(_ROOT / "src"), str(_TESTS_DIR / "helpers")] if p not in sys.path
]

from ledger_recon.config import LedgerReconConfig, load_config  # noqa: E402
from ledger_recon.store import InMemoryLedgerStore, SqlLedgerStore  # noqa: E402


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store-facing test runs against both implementations."""
    if request.param == "memory":
        yield InMemoryLedgerStore()
        return
    sql_store = SqlLedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield sql_store
    sql_store.close()


@pytest.fixture
def memory_store():
    return InMemoryLedgerStore()


@pytest.fixture
def config() -> LedgerReconConfig:
    """Default configuration: mercury is matched against wave, then doorloop."""
    return load_config(None)


@pytest.fixture(autouse=True)
def _no_connector_credentials(monkeypatch):
    """Keep real credentials from the environment out of every test."""
    for name in (
        "MERCURY_API_KEY",
        "MERCURY_ACCOUNT_ID",
        "WAVE_API_TOKEN",
        "WAVE_BUSINESS_ID",
        "DOORLOOP_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
