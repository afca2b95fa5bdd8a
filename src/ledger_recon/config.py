"""Configuration loader and validation for sync and reconciliation settings."""

from pathlib import Path
from typing import Any, Literal, Optional
import logging

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ConnectorConfig(BaseModel):
    """Settings shared by every connector adapter."""

    enabled: bool = True
    base_url: str
    page_size: int = 100
    timeout_seconds: float = 30.0


class MercuryConfig(ConnectorConfig):
    """Mercury bank connector settings."""

    base_url: str = "https://api.mercury.com/api/v1"
    # Sync only this account (else the credential store's); all accounts when unset
    account_id: Optional[str] = None


class WaveConfig(ConnectorConfig):
    """Wave accounting connector settings."""

    base_url: str = "https://api.waveapps.com"
    business_id: Optional[str] = None


class DoorLoopConfig(ConnectorConfig):
    """DoorLoop property-management connector settings."""

    base_url: str = "https://app.doorloop.com"


class ConnectorsConfig(BaseModel):
    """Configuration for all connectors."""

    mercury: MercuryConfig = Field(default_factory=MercuryConfig)
    wave: WaveConfig = Field(default_factory=WaveConfig)
    doorloop: DoorLoopConfig = Field(default_factory=DoorLoopConfig)


class MatchPairConfig(BaseModel):
    """A pair of connectors whose transactions are reconciled against each other."""

    name: str
    left: str
    right: str
    # "same": both sides record the event with the same sign.
    # "opposite": one side is the mirror image of the other.
    sign_rule: Literal["same", "opposite"] = "same"
    tolerance_days: Optional[int] = None


class MatchingConfig(BaseModel):
    """Configuration for the reconciliation matcher."""

    default_tolerance_days: int = 3
    pairs: list[MatchPairConfig] = Field(default_factory=list)


class CategorizationConfig(BaseModel):
    """Configuration for the category mapper."""

    # YAML or CSV chart of accounts; the built-in chart is used when unset
    rules_file: Optional[str] = None


class SyncConfig(BaseModel):
    """Configuration for the sync orchestrator."""

    max_pages_per_run: int = 50
    max_workers: int = 4
    call_timeout_seconds: float = 60.0
    # In-run retries of a page after a transient failure
    transient_retries: int = 2
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 5.0
    # Alert once consecutive failed runs of a connector exceed this; 0 disables
    alert_failure_threshold: int = 3


class ExportConfig(BaseModel):
    """Configuration for the push/export gateway."""

    target: str = "wave"
    batch_size: int = 50
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0


class StoreConfig(BaseModel):
    """Configuration for the ledger store."""

    database_url: str = "sqlite:///ledger_recon.db"


class ExcelOutputConfig(BaseModel):
    """Configuration for Excel output."""

    filename_template: str = "reconciliation_run_{run_id}_{date}.xlsx"


class SheetConfig(BaseModel):
    """Configuration for a report sheet."""

    enabled: bool = True
    name: str


class SheetsConfig(BaseModel):
    """Configuration for all report sheets."""

    summary: SheetConfig = Field(default_factory=lambda: SheetConfig(name="Summary"))
    matched: SheetConfig = Field(default_factory=lambda: SheetConfig(name="Matched Pairs"))
    unmatched: SheetConfig = Field(default_factory=lambda: SheetConfig(name="Unmatched"))
    pending_review: SheetConfig = Field(
        default_factory=lambda: SheetConfig(name="Pending Review")
    )
    needs_categorization: SheetConfig = Field(
        default_factory=lambda: SheetConfig(name="Needs Categorization")
    )
    stuck_pushes: SheetConfig = Field(default_factory=lambda: SheetConfig(name="Stuck Pushes"))


class OutputConfig(BaseModel):
    """Configuration for output."""

    excel: ExcelOutputConfig = Field(default_factory=ExcelOutputConfig)
    sheets: SheetsConfig = Field(default_factory=SheetsConfig)


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


class LedgerReconConfig(BaseModel):
    """Main configuration model."""

    connectors: ConnectorsConfig = Field(default_factory=ConnectorsConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    categorization: CategorizationConfig = Field(default_factory=CategorizationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_file_path: Optional[str] = None

    def tolerance_for(self, pair: MatchPairConfig) -> int:
        """Date tolerance for a pair, falling back to the global default."""
        if pair.tolerance_days is not None:
            return pair.tolerance_days
        return self.matching.default_tolerance_days


def get_default_config() -> dict[str, Any]:
    """Return the default configuration as a dictionary."""
    return {
        "connectors": {
            "mercury": {
                "enabled": True,
                "base_url": "https://api.mercury.com/api/v1",
                "page_size": 100,
                "timeout_seconds": 30.0,
                "account_id": None,
            },
            "wave": {
                "enabled": True,
                "base_url": "https://api.waveapps.com",
                "page_size": 100,
                "timeout_seconds": 30.0,
                "business_id": None,
            },
            "doorloop": {
                "enabled": True,
                "base_url": "https://app.doorloop.com",
                "page_size": 100,
                "timeout_seconds": 30.0,
            },
        },
        "matching": {
            "default_tolerance_days": 3,
            "pairs": [
                {
                    "name": "bank_vs_books",
                    "left": "mercury",
                    "right": "wave",
                    "sign_rule": "same",
                },
                {
                    "name": "bank_vs_property_ledger",
                    "left": "mercury",
                    "right": "doorloop",
                    "sign_rule": "same",
                },
            ],
        },
        "categorization": {
            "rules_file": None,
        },
        "sync": {
            "max_pages_per_run": 50,
            "max_workers": 4,
            "call_timeout_seconds": 60.0,
            "transient_retries": 2,
            "retry_backoff_seconds": 0.5,
            "retry_backoff_max_seconds": 5.0,
            "alert_failure_threshold": 3,
        },
        "export": {
            "target": "wave",
            "batch_size": 50,
            "max_attempts": 5,
            "backoff_base_seconds": 1.0,
            "backoff_max_seconds": 60.0,
        },
        "store": {
            "database_url": "sqlite:///ledger_recon.db",
        },
        "output": {
            "excel": {
                "filename_template": "reconciliation_run_{run_id}_{date}.xlsx",
            },
            "sheets": {
                "summary": {"enabled": True, "name": "Summary"},
                "matched": {"enabled": True, "name": "Matched Pairs"},
                "unmatched": {"enabled": True, "name": "Unmatched"},
                "pending_review": {"enabled": True, "name": "Pending Review"},
                "needs_categorization": {"enabled": True, "name": "Needs Categorization"},
                "stuck_pushes": {"enabled": True, "name": "Stuck Pushes"},
            },
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None,
        },
    }


def load_config(config_path: Optional[Path] = None) -> LedgerReconConfig:
    """
    Load configuration from a YAML file or use defaults.

    Args:
        config_path: Path to YAML configuration file (optional)

    Returns:
        LedgerReconConfig object with loaded or default settings
    """
    config_dict = get_default_config()

    if config_path and config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        with open(config_path, "r") as f:
            user_config = yaml.safe_load(f) or {}

        config_dict = _deep_merge(config_dict, user_config)
        config_dict["config_file_path"] = str(config_path)
    else:
        logger.info("Using default configuration")

    return LedgerReconConfig(**config_dict)


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Lists are replaced, not concatenated, so a user file can redefine the
    match pairs entirely.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def generate_default_config(output_path: Path) -> None:
    """
    Generate a default configuration file.

    Args:
        output_path: Path to write the configuration file
    """
    config_dict = get_default_config()

    yaml_content = """# Ledger sync and reconciliation configuration
# Generated configuration file - customize as needed
# Credentials are read from the environment (MERCURY_API_KEY, WAVE_API_TOKEN,
# WAVE_BUSINESS_ID, DOORLOOP_API_KEY), never from this file.

"""
    yaml_content += yaml.dump(config_dict, default_flow_style=False, sort_keys=False)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        f.write(yaml_content)

    logger.info(f"Generated configuration file: {output_path}")
