"""
Connector adapter interface and the shared HTTP plumbing.

Every external platform is wrapped by one ``ConnectorAdapter`` subclass
exposing the same four capabilities. Adapters raise the typed errors from
``utils.exceptions`` so the orchestrator can tell an expired key from a
flaky network without inspecting vendor payloads.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Mapping, Optional
import logging

import requests

from ..config import ConnectorConfig
from ..models.transaction import CanonicalTransaction, ExternalAccount, RawTransaction
from ..utils.exceptions import (
    ConnectorAuthError,
    ConnectorError,
    ConnectorPermanentError,
    ConnectorRateLimited,
    ConnectorTimeout,
    ConnectorTransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class AmountConvention(Enum):
    """How a platform signs the amounts it reports."""

    # Money leaving the business is negative (bank statement view)
    OUTFLOW_NEGATIVE = "outflow_negative"
    # Money leaving the business is positive (expense-ledger view)
    OUTFLOW_POSITIVE = "outflow_positive"


@dataclass
class FetchPage:
    """One page of transactions plus the cursor that follows it."""

    transactions: list[RawTransaction]
    next_cursor: Optional[str]
    has_more: bool
    # (external_id, reason) for records that were skipped as malformed
    item_errors: list[tuple[Optional[str], str]] = field(default_factory=list)


@dataclass
class PushResult:
    """Outcome of pushing one transaction to a system of record."""

    canonical_id: str
    ok: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class ConnectorAdapter(ABC):
    """Abstract base class for platform connectors."""

    name: str = ""
    amount_convention: AmountConvention = AmountConvention.OUTFLOW_NEGATIVE

    @abstractmethod
    def fetch_transactions(self, cursor: Optional[str]) -> FetchPage:
        """
        Fetch the page of transactions starting at ``cursor``.

        Args:
            cursor: Token from a previous page, or None to start from the beginning

        Returns:
            The page and the cursor for the next call

        Raises:
            ConnectorError: Classified failure; ``partial`` holds records fetched
                before a mid-page failure
        """
        pass

    @abstractmethod
    def fetch_accounts(self) -> list[ExternalAccount]:
        """Return the accounts visible with the configured credentials."""
        pass

    @abstractmethod
    def push_transactions(self, batch: list[CanonicalTransaction]) -> list[PushResult]:
        """
        Create the given transactions in the platform.

        Returns:
            One result per input transaction, in input order

        Raises:
            ConnectorError: When the whole batch failed (auth, throttling)
        """
        pass

    def test_connection(self) -> tuple[bool, str]:
        """Check credentials and reachability by listing accounts."""
        try:
            accounts = self.fetch_accounts()
        except ConnectorError as e:
            return False, str(e)
        return True, f"{len(accounts)} account(s) visible"


class HttpConnector(ConnectorAdapter):
    """Connector speaking JSON over HTTPS with a bearer token."""

    def __init__(self, settings: ConnectorConfig, credentials: Mapping[str, str]):
        """
        Initialize the connector.

        Args:
            settings: Connector section of the configuration
            credentials: Read-only secrets for this connector
        """
        self.settings = settings
        self._credentials = credentials

    def _api_key(self) -> str:
        key = self._credentials.get("api_key")
        if not key:
            raise ConnectorAuthError(f"{self.name} API key not configured", source=self.name)
        return key

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        """Send a request, mapping network failures onto the error taxonomy."""
        url = f"{self.settings.base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            return requests.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {self._api_key()}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                params=params,
                json=json_body,
                timeout=self.settings.timeout_seconds,
            )
        except requests.Timeout as e:
            raise ConnectorTimeout(f"{self.name} request timed out: {e}", source=self.name) from e
        except requests.RequestException as e:
            raise ConnectorTransientError(
                f"{self.name} request failed: {e}", source=self.name
            ) from e

    def _raise_for_status(self, resp: requests.Response) -> None:
        """Classify an HTTP error response."""
        status = resp.status_code
        if status < 400:
            return

        message = f"{self.name} API error (HTTP {status}): {resp.text[:200]}"
        if status in (401, 403):
            raise ConnectorAuthError(message, source=self.name)
        if status == 429:
            retry_after = _parse_retry_after(resp)
            raise ConnectorRateLimited(message, source=self.name, retry_after=retry_after)
        if status >= 500 or status == 408:
            raise ConnectorTransientError(message, source=self.name)
        raise ConnectorPermanentError(message, source=self.name)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        resp = self._request(method, path, params=params, json_body=json_body)
        self._raise_for_status(resp)
        try:
            payload = resp.json()
        except ValueError as e:
            raise ConnectorTransientError(
                f"{self.name} returned a non-JSON body", source=self.name
            ) from e
        if not isinstance(payload, dict):
            raise ConnectorPermanentError(
                f"{self.name} returned an unexpected payload shape", source=self.name
            )
        return payload


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 date or datetime from an API payload.

    Naive values are taken to be UTC.

    Raises:
        ValidationError: If the value is missing or not ISO-8601
    """
    if not value or not isinstance(value, str):
        raise ValidationError(f"Missing or invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        else:
            parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_retry_after(resp: requests.Response) -> Optional[float]:
    value = (resp.headers or {}).get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
