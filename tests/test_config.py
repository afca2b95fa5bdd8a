from pathlib import Path
import logging

import pytest
from click.testing import CliRunner

from ledger_recon.cli import main
from ledger_recon.config import (
    MatchPairConfig,
    _deep_merge,
    generate_default_config,
    get_default_config,
    load_config,
)
from ledger_recon.models.transaction import RunStatus
from ledger_recon.store import SqlLedgerStore
from ledger_recon.utils.logging_config import ROOT_LOGGER_NAME


@pytest.fixture(autouse=True)
def _reset_app_logging():
    # CLI commands attach handlers bound to the runner's captured streams
    yield
    logging.getLogger(ROOT_LOGGER_NAME).handlers = []


def test_defaults_without_a_config_file() -> None:
    config = load_config(None)

    assert config.sync.max_pages_per_run == 50
    assert config.sync.transient_retries == 2
    assert config.export.target == "wave"
    assert [(p.left, p.right) for p in config.matching.pairs] == [
        ("mercury", "wave"),
        ("mercury", "doorloop"),
    ]
    assert config.config_file_path is None


def test_missing_config_file_falls_back_to_defaults(tmp_path) -> None:
    assert load_config(tmp_path / "nope.yaml").sync.max_workers == 4


def test_user_file_is_deep_merged_and_lists_are_replaced(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "sync:\n"
        "  max_workers: 2\n"
        "connectors:\n"
        "  wave:\n"
        "    business_id: biz_42\n"
        "matching:\n"
        "  pairs:\n"
        "    - {name: transfers, left: mercury, right: doorloop, sign_rule: opposite, tolerance_days: 1}\n"
    )

    config = load_config(path)

    assert config.sync.max_workers == 2
    assert config.sync.max_pages_per_run == 50
    assert config.connectors.wave.business_id == "biz_42"
    assert config.connectors.wave.base_url == "https://api.waveapps.com"
    assert [p.name for p in config.matching.pairs] == ["transfers"]
    assert config.config_file_path == str(path)


def test_pair_tolerance_falls_back_to_the_default() -> None:
    config = load_config(None)
    config.matching.default_tolerance_days = 5

    assert config.tolerance_for(MatchPairConfig(name="a", left="x", right="y")) == 5
    assert config.tolerance_for(MatchPairConfig(name="b", left="x", right="y", tolerance_days=0)) == 0


def test_deep_merge_leaves_the_base_untouched() -> None:
    base = {"a": {"b": 1, "c": 2}, "d": [1, 2]}

    merged = _deep_merge(base, {"a": {"b": 9}, "d": [3]})

    assert merged == {"a": {"b": 9, "c": 2}, "d": [3]}
    assert base["a"]["b"] == 1


def test_generated_config_loads_back_to_the_defaults(tmp_path) -> None:
    path = tmp_path / "nested" / "config.yaml"

    generate_default_config(path)

    assert path.read_text().startswith("# Ledger sync and reconciliation configuration")
    loaded = load_config(path).model_dump(exclude={"config_file_path"})
    assert loaded == load_config(None).model_dump(exclude={"config_file_path"})
    assert set(get_default_config()) <= set(loaded)


def test_cli_init_config(tmp_path) -> None:
    output = tmp_path / "generated.yaml"

    result = CliRunner().invoke(main, ["init-config", "-o", str(output)])

    assert result.exit_code == 0
    assert output.exists()


def test_cli_sync_without_credentials_records_a_failed_run(tmp_path) -> None:
    db_path = tmp_path / "ledger.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  database_url: sqlite:///{db_path}\n")

    result = CliRunner().invoke(main, ["sync", "-c", str(config_path)])

    assert result.exit_code == 1
    store = SqlLedgerStore(f"sqlite:///{db_path}")
    try:
        runs = store.list_runs()
        assert [r.overall_status for r in runs] == [RunStatus.FAILED]
        assert {c.connector for c in store.list_cursors()} == {"mercury", "wave", "doorloop"}
    finally:
        store.close()


def test_cli_runs_lists_history(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"store:\n  database_url: sqlite:///{tmp_path / 'ledger.db'}\n")

    result = CliRunner().invoke(main, ["runs", "-c", str(config_path)])

    assert result.exit_code == 0
    assert Path(tmp_path / "ledger.db").exists()
