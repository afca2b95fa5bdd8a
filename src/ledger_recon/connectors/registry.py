"""Builds connector adapters from configuration and a credential store."""

import logging

from ..config import LedgerReconConfig
from .base import ConnectorAdapter
from .credentials import CredentialStore
from .doorloop import DoorLoopConnector
from .mercury import MercuryConnector
from .wave import WaveConnector

logger = logging.getLogger(__name__)


def build_connectors(
    config: LedgerReconConfig, credentials: CredentialStore
) -> dict[str, ConnectorAdapter]:
    """
    Instantiate every enabled connector.

    Args:
        config: Application configuration
        credentials: Source of per-connector secrets

    Returns:
        Mapping of connector name to adapter
    """
    settings = config.connectors
    candidates: list[tuple[bool, ConnectorAdapter]] = [
        (
            settings.mercury.enabled,
            MercuryConnector(settings.mercury, credentials.get(MercuryConnector.name)),
        ),
        (
            settings.wave.enabled,
            WaveConnector(settings.wave, credentials.get(WaveConnector.name)),
        ),
        (
            settings.doorloop.enabled,
            DoorLoopConnector(settings.doorloop, credentials.get(DoorLoopConnector.name)),
        ),
    ]

    connectors: dict[str, ConnectorAdapter] = {}
    for enabled, connector in candidates:
        if enabled:
            connectors[connector.name] = connector
        else:
            logger.debug(f"Connector disabled: {connector.name}")
    return connectors
