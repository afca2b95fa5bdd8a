"""Connector adapters for external financial platforms."""

from .base import AmountConvention, ConnectorAdapter, FetchPage, HttpConnector, PushResult
from .credentials import CredentialStore, EnvCredentialStore, StaticCredentialStore
from .doorloop import DoorLoopConnector
from .mercury import MercuryConnector
from .registry import build_connectors
from .wave import WaveConnector

__all__ = [
    "AmountConvention",
    "ConnectorAdapter",
    "FetchPage",
    "HttpConnector",
    "PushResult",
    "CredentialStore",
    "EnvCredentialStore",
    "StaticCredentialStore",
    "DoorLoopConnector",
    "MercuryConnector",
    "WaveConnector",
    "build_connectors",
]
