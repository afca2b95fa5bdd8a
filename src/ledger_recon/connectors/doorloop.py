"""
DoorLoop property-management connector.

Sign convention: DoorLoop reports ``amount`` as signed dollars from the
owner's ledger; rent and other income are positive, expenses negative.
That matches the canonical convention.

Transactions reference a ledger account by id; the account name becomes the
vendor category. Account names are looked up lazily and cached. A lookup
that fails part way through a page aborts the page and hands back the
records normalized so far, so the cursor stays where it was.
"""

from typing import Any, Mapping, Optional
import logging

from ..canonical.money import parse_decimal, to_minor_units
from ..config import DoorLoopConfig
from ..models.transaction import CanonicalTransaction, ExternalAccount, RawTransaction
from ..utils.exceptions import ConnectorError, ConnectorPermanentError, ValidationError
from .base import AmountConvention, FetchPage, HttpConnector, PushResult, parse_timestamp

logger = logging.getLogger(__name__)

VOID_STATUSES = {"void", "voided", "deleted"}


class DoorLoopConnector(HttpConnector):
    """Connector for the DoorLoop API."""

    name = "doorloop"
    amount_convention = AmountConvention.OUTFLOW_NEGATIVE

    def __init__(self, settings: DoorLoopConfig, credentials: Mapping[str, str]):
        super().__init__(settings, credentials)
        self._account_names: dict[str, str] = {}

    def fetch_accounts(self) -> list[ExternalAccount]:
        payload = self._request_json("GET", "/api/v1/accounts")
        accounts: list[ExternalAccount] = []
        for item in payload.get("data") or []:
            account_id = str(item["id"])
            self._account_names[account_id] = item.get("name") or account_id
            balance = item.get("balance")
            accounts.append(
                ExternalAccount(
                    source=self.name,
                    external_id=account_id,
                    display_name=self._account_names[account_id],
                    currency="USD",
                    balance_snapshot=(
                        to_minor_units(parse_decimal(balance), "USD")
                        if balance is not None
                        else None
                    ),
                )
            )
        return accounts

    def _account_name(self, account_id: str) -> str:
        if account_id not in self._account_names:
            payload = self._request_json("GET", f"/api/v1/accounts/{account_id}")
            self._account_names[account_id] = payload.get("name") or account_id
        return self._account_names[account_id]

    def fetch_transactions(self, cursor: Optional[str]) -> FetchPage:
        page_number = int(cursor) if cursor else 1
        page_size = self.settings.page_size
        payload = self._request_json(
            "GET",
            "/api/v1/transactions",
            params={"page_number": page_number, "page_size": page_size},
        )
        records = payload.get("data") or []
        total = int(payload.get("total") or 0)
        has_more = page_number * page_size < total

        page = FetchPage(
            transactions=[],
            next_cursor=str(page_number + 1) if has_more else str(page_number),
            has_more=has_more,
        )
        for record in records:
            external_id = record.get("id")
            try:
                txn = self._normalize(record)
            except (ValidationError, KeyError) as e:
                logger.warning(f"Skipping malformed DoorLoop transaction {external_id}: {e}")
                page.item_errors.append((external_id, str(e)))
                continue
            except ConnectorError as e:
                e.partial = list(page.transactions)
                raise
            if txn is not None:
                page.transactions.append(txn)

        return page

    def _normalize(self, record: dict[str, Any]) -> Optional[RawTransaction]:
        if (record.get("status") or "").lower() in VOID_STATUSES:
            return None

        external_id = record["id"]
        if not external_id:
            raise ValidationError("transaction has no id")

        raw_category = record.get("category")
        account_id = record.get("account")
        if raw_category is None and account_id:
            raw_category = self._account_name(str(account_id))

        return RawTransaction(
            source=self.name,
            external_id=str(external_id),
            timestamp=parse_timestamp(record.get("date")),
            amount=parse_decimal(record["amount"]),
            currency=(record.get("currency") or "USD").upper(),
            raw_description=record.get("description") or record.get("memo") or "",
            raw_category=raw_category,
            posted=(record.get("status") or "posted").lower() != "pending",
        )

    def push_transactions(self, batch: list[CanonicalTransaction]) -> list[PushResult]:
        raise ConnectorPermanentError(
            "DoorLoop does not accept pushed transactions", source=self.name
        )
