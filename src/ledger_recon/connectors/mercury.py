"""
Mercury bank connector.

Sign convention: Mercury reports ``amount`` as a signed dollar figure from
the account holder's point of view; debits (money out) are negative and
credits positive. This is already the canonical convention, so amounts pass
through unchanged apart from unit conversion. The amount arrives either as a
plain number or as ``{"value": ..., "currency": ...}``.

Every account the key can see is synced (or only ``account_id`` when one is
configured). Pagination is offset based per account. The cursor is a JSON
object holding the offset of the next unread transaction of each account in
ascending date order, plus the accounts still to read in the current sweep:

    {"offsets": {"acc_1": 120, "acc_2": 40}, "queue": ["acc_2"]}

One page of one account is fetched per call, so each account's offset only
moves once the page that produced it has been persisted. A sweep ends when
every queued account has returned a short page; the next run starts a new
sweep over the current account list from the stored offsets.
"""

from typing import Any, Mapping, Optional
import json
import logging

from ..canonical.money import parse_decimal, to_minor_units
from ..config import MercuryConfig
from ..models.transaction import CanonicalTransaction, ExternalAccount, RawTransaction
from ..utils.exceptions import ConnectorPermanentError, ValidationError
from .base import AmountConvention, FetchPage, HttpConnector, PushResult, parse_timestamp

logger = logging.getLogger(__name__)

# Mercury statuses for transactions that never moved money
SKIPPED_STATUSES = {"cancelled", "failed", "reversed", "blocked"}


def encode_cursor(offsets: dict[str, int], queue: Optional[list[str]] = None) -> str:
    state: dict[str, Any] = {"offsets": offsets}
    if queue:
        state["queue"] = queue
    return json.dumps(state, sort_keys=True, separators=(",", ":"))


def decode_cursor(cursor: Optional[str]) -> tuple[dict[str, int], Optional[list[str]]]:
    """
    Split a cursor into per-account offsets and the remaining sweep queue.

    Raises:
        ValidationError: If the cursor was not produced by ``encode_cursor``
    """
    if not cursor:
        return {}, None
    try:
        state = json.loads(cursor)
        offsets = {str(k): int(v) for k, v in state["offsets"].items()}
        queue = [str(a) for a in state["queue"]] if state.get("queue") else None
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise ValidationError(f"Unreadable Mercury cursor {cursor!r}") from e
    return offsets, queue


class MercuryConnector(HttpConnector):
    """Connector for the Mercury banking API."""

    name = "mercury"
    amount_convention = AmountConvention.OUTFLOW_NEGATIVE

    def __init__(self, settings: MercuryConfig, credentials: Mapping[str, str]):
        super().__init__(settings, credentials)
        self._account_id: Optional[str] = settings.account_id or credentials.get("account_id")

    def fetch_accounts(self) -> list[ExternalAccount]:
        payload = self._request_json("GET", "/accounts")
        accounts: list[ExternalAccount] = []
        for item in payload.get("accounts") or []:
            balance = item.get("currentBalance", item.get("balance"))
            currency = item.get("currency") or "USD"
            accounts.append(
                ExternalAccount(
                    source=self.name,
                    external_id=str(item["id"]),
                    display_name=item.get("name") or item.get("nickname") or str(item["id"]),
                    currency=currency,
                    balance_snapshot=(
                        to_minor_units(parse_decimal(balance), currency)
                        if balance is not None
                        else None
                    ),
                )
            )
        return accounts

    def _account_ids(self) -> list[str]:
        if self._account_id:
            return [self._account_id]
        return [account.external_id for account in self.fetch_accounts()]

    def fetch_transactions(self, cursor: Optional[str]) -> FetchPage:
        try:
            offsets, queue = decode_cursor(cursor)
        except ValidationError as e:
            raise ConnectorPermanentError(str(e), source=self.name) from e
        if queue is None:
            queue = self._account_ids()
            logger.debug(f"Mercury sweep over {len(queue)} account(s)")
        if not queue:
            return FetchPage(transactions=[], next_cursor=encode_cursor(offsets), has_more=False)

        account_id = queue[0]
        offset = offsets.get(account_id, 0)
        limit = self.settings.page_size

        payload = self._request_json(
            "GET",
            f"/account/{account_id}/transactions",
            params={"limit": limit, "offset": offset, "order": "asc"},
        )
        records = payload.get("transactions") or []

        offsets = {**offsets, account_id: offset + len(records)}
        if len(records) < limit:
            # Account exhausted for this sweep
            queue = queue[1:]
        page = FetchPage(
            transactions=[],
            next_cursor=encode_cursor(offsets, queue),
            has_more=bool(queue),
        )
        for record in records:
            external_id = record.get("id")
            try:
                txn = self._normalize(record)
            except (ValidationError, KeyError) as e:
                logger.warning(f"Skipping malformed Mercury transaction {external_id}: {e}")
                page.item_errors.append((external_id, str(e)))
                continue
            if txn is not None:
                page.transactions.append(txn)

        logger.debug(
            f"Mercury account {account_id} at offset {offset}: {len(records)} records, "
            f"{len(page.transactions)} usable"
        )
        return page

    def _normalize(self, record: dict[str, Any]) -> Optional[RawTransaction]:
        status = (record.get("status") or "").lower()
        if status in SKIPPED_STATUSES:
            return None

        external_id = record["id"]
        if not external_id:
            raise ValidationError("transaction has no id")

        amount = record["amount"]
        currency = record.get("currency")
        if isinstance(amount, dict):
            currency = amount.get("currency") or currency
            amount = amount.get("value")

        posted_at = record.get("postedAt")
        description = (
            record.get("bankDescription")
            or record.get("counterpartyName")
            or record.get("description")
            or record.get("note")
            or ""
        )
        return RawTransaction(
            source=self.name,
            external_id=str(external_id),
            timestamp=parse_timestamp(posted_at or record.get("createdAt")),
            amount=parse_decimal(amount),
            currency=currency or "USD",
            raw_description=description,
            raw_category=record.get("mercuryCategory"),
            posted=posted_at is not None and status != "pending",
        )

    def push_transactions(self, batch: list[CanonicalTransaction]) -> list[PushResult]:
        raise ConnectorPermanentError(
            "Mercury is read-only and does not accept pushed transactions", source=self.name
        )
