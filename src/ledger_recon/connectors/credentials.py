"""Read-only access to per-connector secrets."""

from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Mapping, Optional
import os

# connector -> credential field -> environment variable
ENV_VARIABLES: dict[str, dict[str, str]] = {
    "mercury": {"api_key": "MERCURY_API_KEY", "account_id": "MERCURY_ACCOUNT_ID"},
    "wave": {"api_key": "WAVE_API_TOKEN", "business_id": "WAVE_BUSINESS_ID"},
    "doorloop": {"api_key": "DOORLOOP_API_KEY"},
}


class CredentialStore(ABC):
    """Supplies connector secrets. Adapters only ever read from it."""

    @abstractmethod
    def get(self, connector: str) -> Mapping[str, str]:
        """Return the credentials for ``connector`` (empty when none are set)."""
        pass


class StaticCredentialStore(CredentialStore):
    """Credentials held in memory, e.g. handed over by an OAuth service."""

    def __init__(self, credentials: Optional[dict[str, dict[str, str]]] = None):
        self._credentials = {k: dict(v) for k, v in (credentials or {}).items()}

    def get(self, connector: str) -> Mapping[str, str]:
        return MappingProxyType(dict(self._credentials.get(connector, {})))


class EnvCredentialStore(CredentialStore):
    """Credentials read from environment variables."""

    def __init__(self, variables: Optional[dict[str, dict[str, str]]] = None):
        self._variables = variables or ENV_VARIABLES

    def get(self, connector: str) -> Mapping[str, str]:
        values = {
            field: os.environ[env_name]
            for field, env_name in self._variables.get(connector, {}).items()
            if os.environ.get(env_name)
        }
        return MappingProxyType(values)
