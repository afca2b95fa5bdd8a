"""
Wave accounting connector (the system of record for exports).

Sign convention: Wave reports an unsigned ``amount.value`` together with a
``direction``. This connector emits amounts in Wave's bookkeeping view where
an expense (``WITHDRAWAL``) is positive and a deposit negative, and declares
``OUTFLOW_POSITIVE`` so canonicalization flips them into the shared
outflow-negative convention. Pushed transactions go the other way: the
canonical sign picks the direction and the magnitude is sent unsigned.

Pagination is page-number based. The cursor names the next page to read; on
the last page it stays put so the next run re-reads that page and picks up
anything appended to it (re-ingestion is a no-op).
"""

from typing import Any, Mapping, Optional
import logging

from ..canonical.money import parse_decimal, to_major_units, to_minor_units
from ..config import WaveConfig
from ..models.transaction import CanonicalTransaction, ExternalAccount, RawTransaction
from ..utils.exceptions import (
    ConnectorAuthError,
    ConnectorPermanentError,
    ConnectorTransientError,
    PushFailure,
    ValidationError,
)
from .base import AmountConvention, FetchPage, HttpConnector, PushResult, parse_timestamp

logger = logging.getLogger(__name__)

WITHDRAWAL = "WITHDRAWAL"
DEPOSIT = "DEPOSIT"


class WaveConnector(HttpConnector):
    """Connector for the Wave accounting API."""

    name = "wave"
    amount_convention = AmountConvention.OUTFLOW_POSITIVE

    def __init__(self, settings: WaveConfig, credentials: Mapping[str, str]):
        super().__init__(settings, credentials)
        self._business_id: Optional[str] = settings.business_id or credentials.get(
            "business_id"
        )

    def _business(self) -> str:
        if not self._business_id:
            raise ConnectorAuthError("Wave business id not configured", source=self.name)
        return self._business_id

    def fetch_accounts(self) -> list[ExternalAccount]:
        payload = self._request_json("GET", f"/businesses/{self._business()}/accounts")
        accounts: list[ExternalAccount] = []
        for item in payload.get("data") or []:
            currency = _currency_code(item.get("currency"))
            balance = item.get("balance")
            accounts.append(
                ExternalAccount(
                    source=self.name,
                    external_id=str(item["id"]),
                    display_name=item.get("name") or str(item["id"]),
                    currency=currency,
                    balance_snapshot=(
                        to_minor_units(parse_decimal(balance), currency)
                        if balance is not None
                        else None
                    ),
                )
            )
        return accounts

    def fetch_transactions(self, cursor: Optional[str]) -> FetchPage:
        page_number = int(cursor) if cursor else 1
        payload = self._request_json(
            "GET",
            f"/businesses/{self._business()}/transactions",
            params={"page": page_number, "page_size": self.settings.page_size},
        )
        records = payload.get("data") or []
        meta = payload.get("meta") or {}
        total_pages = int(meta.get("total_pages") or page_number)
        has_more = page_number < total_pages

        page = FetchPage(
            transactions=[],
            next_cursor=str(page_number + 1) if has_more else str(page_number),
            has_more=has_more,
        )
        for record in records:
            external_id = record.get("id")
            try:
                page.transactions.append(self._normalize(record))
            except (ValidationError, KeyError) as e:
                logger.warning(f"Skipping malformed Wave transaction {external_id}: {e}")
                page.item_errors.append((external_id, str(e)))

        return page

    def _normalize(self, record: dict[str, Any]) -> RawTransaction:
        external_id = record["id"]
        if not external_id:
            raise ValidationError("transaction has no id")

        money = record.get("amount") or {}
        value = parse_decimal(money.get("value"))
        direction = (record.get("direction") or "").upper()
        if direction == WITHDRAWAL:
            amount = abs(value)
        elif direction == DEPOSIT:
            amount = -abs(value)
        else:
            raise ValidationError(f"unknown direction {direction!r}")

        account = record.get("account") or {}
        return RawTransaction(
            source=self.name,
            external_id=str(external_id),
            timestamp=parse_timestamp(record.get("date")),
            amount=amount,
            currency=_currency_code(money.get("currency")),
            raw_description=record.get("description") or "",
            raw_category=account.get("name"),
            posted=True,
        )

    def push_transactions(self, batch: list[CanonicalTransaction]) -> list[PushResult]:
        """
        Create each transaction in Wave, keyed by its canonical id.

        Auth and throttling errors abort the batch; anything else is reported
        per item so one bad record does not hold back the rest.
        """
        results: list[PushResult] = []
        for txn in batch:
            try:
                external_id = self._push_one(txn)
                results.append(
                    PushResult(canonical_id=txn.canonical_id, ok=True, external_id=external_id)
                )
            except PushFailure as e:
                results.append(
                    PushResult(
                        canonical_id=txn.canonical_id,
                        ok=False,
                        error=str(e),
                        retryable=e.retryable,
                    )
                )
        return results

    def _push_one(self, txn: CanonicalTransaction) -> Optional[str]:
        body = {
            "externalId": txn.canonical_id,
            "date": txn.posted_date.isoformat(),
            "description": txn.description,
            "amount": {
                "value": str(to_major_units(abs(txn.amount), txn.currency)),
                "currency": txn.currency,
            },
            "direction": WITHDRAWAL if txn.amount < 0 else DEPOSIT,
            "category": txn.category_id,
        }
        try:
            resp = self._request(
                "POST", f"/businesses/{self._business()}/transactions", json_body=body
            )
        except ConnectorTransientError as e:
            raise PushFailure(str(e), txn.canonical_id, retryable=True) from e

        if resp.status_code == 409:
            # Already created under this externalId by an earlier attempt
            logger.debug(f"Wave already holds {txn.canonical_id}")
            return None

        try:
            self._raise_for_status(resp)
        except ConnectorTransientError as e:
            raise PushFailure(str(e), txn.canonical_id, retryable=True) from e
        except ConnectorPermanentError as e:
            raise PushFailure(str(e), txn.canonical_id, retryable=False) from e

        try:
            data = resp.json().get("data") or {}
        except (ValueError, AttributeError):
            data = {}
        return str(data["id"]) if data.get("id") is not None else None


def _currency_code(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("code")
    return (value or "USD").upper()
