import json
from datetime import date
from decimal import Decimal

import pytest
import requests

from ledger_recon.config import DoorLoopConfig, MercuryConfig, WaveConfig, load_config
from ledger_recon.connectors import (
    AmountConvention,
    DoorLoopConnector,
    EnvCredentialStore,
    MercuryConnector,
    StaticCredentialStore,
    WaveConnector,
    build_connectors,
)
from ledger_recon.connectors.mercury import decode_cursor, encode_cursor
from ledger_recon.utils.exceptions import (
    ConnectorAuthError,
    ConnectorPermanentError,
    ConnectorRateLimited,
    ConnectorTimeout,
    ConnectorTransientError,
)

from fakes import make_txn


class _FakeResp:
    def __init__(self, status_code: int, payload, text: str = "", headers=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)
        self.headers = headers or {}

    def json(self):
        return self._payload


def _mercury(**overrides) -> MercuryConnector:
    settings = MercuryConfig(**{"page_size": 2, "account_id": "acc_1", **overrides})
    return MercuryConnector(settings, {"api_key": "mercury-key"})


def _wave(**overrides) -> WaveConnector:
    settings = WaveConfig(**{"business_id": "biz_1", **overrides})
    return WaveConnector(settings, {"api_key": "wave-token"})


def _doorloop() -> DoorLoopConnector:
    return DoorLoopConnector(DoorLoopConfig(page_size=10), {"api_key": "dl-key"})


# Mercury


def test_mercury_pages_by_offset_and_keeps_bank_sign(monkeypatch) -> None:
    calls = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        calls.append({"method": method, "url": url, "headers": headers, "params": params})
        return _FakeResp(
            200,
            {
                "transactions": [
                    {
                        "id": "mer_001",
                        "amount": -1200.00,
                        "postedAt": "2024-03-01T10:00:00Z",
                        "bankDescription": "Rent   payment",
                        "status": "sent",
                    },
                    {
                        "id": "mer_002",
                        "amount": "250.50",
                        "createdAt": "2024-03-02",
                        "counterpartyName": "Tenant",
                        "status": "pending",
                    },
                ]
            },
        )

    monkeypatch.setattr("requests.request", fake_request)

    result = _mercury().fetch_transactions(None)

    assert calls[0]["method"] == "GET"
    assert calls[0]["url"] == "https://api.mercury.com/api/v1/account/acc_1/transactions"
    assert calls[0]["params"] == {"limit": 2, "offset": 0, "order": "asc"}
    assert calls[0]["headers"]["Authorization"] == "Bearer mercury-key"

    assert json.loads(result.next_cursor) == {"offsets": {"acc_1": 2}, "queue": ["acc_1"]}
    assert result.has_more is True
    first, second = result.transactions
    assert first.external_id == "mer_001"
    assert first.amount == Decimal("-1200")
    assert first.timestamp.date() == date(2024, 3, 1)
    assert first.posted is True
    assert second.amount == Decimal("250.50")
    assert second.posted is False


def test_mercury_resumes_from_offset_cursor_and_stops_on_short_page(monkeypatch) -> None:
    seen_params = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        seen_params.append(params)
        return _FakeResp(
            200,
            {"transactions": [{"id": "mer_003", "amount": 5, "postedAt": "2024-03-05"}]},
        )

    monkeypatch.setattr("requests.request", fake_request)

    result = _mercury().fetch_transactions(encode_cursor({"acc_1": 2}))

    assert seen_params[0]["offset"] == 2
    assert decode_cursor(result.next_cursor) == ({"acc_1": 3}, None)
    assert result.has_more is False


def test_mercury_skips_cancelled_and_reports_malformed_records(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        return _FakeResp(
            200,
            {
                "transactions": [
                    {"id": "ok", "amount": -10, "postedAt": "2024-03-01"},
                    {"id": "gone", "amount": -10, "postedAt": "2024-03-01", "status": "cancelled"},
                    {"id": "bad", "amount": "abc", "postedAt": "2024-03-01"},
                ]
            },
        )

    monkeypatch.setattr("requests.request", fake_request)

    result = _mercury(page_size=10).fetch_transactions(None)

    assert [t.external_id for t in result.transactions] == ["ok"]
    assert [external_id for external_id, _ in result.item_errors] == ["bad"]


MERCURY_PAGE_1 = [
    {"id": "a1", "amount": -1, "postedAt": "2024-03-01"},
    {"id": "a2", "amount": -2, "postedAt": "2024-03-02"},
]


def test_mercury_syncs_every_account_when_none_configured(monkeypatch) -> None:
    pages = {
        ("acc_1", 0): MERCURY_PAGE_1,
        ("acc_1", 2): [{"id": "a3", "amount": -3, "postedAt": "2024-03-03"}],
        ("acc_2", 0): [{"id": "b1", "amount": 9, "postedAt": "2024-03-01"}],
        ("acc_1", 3): [],
        ("acc_2", 1): [{"id": "b2", "amount": 4, "postedAt": "2024-03-09"}],
    }
    fetched = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        if url.endswith("/accounts"):
            return _FakeResp(200, {"accounts": [{"id": "acc_1", "name": "Ops"}, {"id": "acc_2", "name": "Payroll"}]})
        account = url.split("/account/")[1].split("/")[0]
        fetched.append((account, params["offset"]))
        return _FakeResp(200, {"transactions": pages[(account, params["offset"])]})

    monkeypatch.setattr("requests.request", fake_request)
    connector = _mercury(account_id=None)

    ids, cursor, has_more = [], None, True
    while has_more:
        result = connector.fetch_transactions(cursor)
        ids.extend(t.external_id for t in result.transactions)
        cursor, has_more = result.next_cursor, result.has_more

    assert fetched == [("acc_1", 0), ("acc_1", 2), ("acc_2", 0)]
    assert ids == ["a1", "a2", "a3", "b1"]
    assert decode_cursor(cursor) == ({"acc_1": 3, "acc_2": 1}, None)

    # The next sweep resumes every account from its own offset
    result = connector.fetch_transactions(cursor)
    assert fetched[-1] == ("acc_1", 3)
    assert result.transactions == []
    assert decode_cursor(result.next_cursor) == ({"acc_1": 3, "acc_2": 1}, ["acc_2"])
    result = connector.fetch_transactions(result.next_cursor)
    assert [t.external_id for t in result.transactions] == ["b2"]
    assert decode_cursor(result.next_cursor) == ({"acc_1": 3, "acc_2": 2}, None)


def test_mercury_accepts_amount_objects_with_their_currency(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        return _FakeResp(
            200,
            {
                "transactions": [
                    {
                        "id": "t1",
                        "amount": {"value": "-12.50", "currency": "EUR"},
                        "status": "posted",
                        "postedAt": "2024-03-01T00:00:00Z",
                        "counterpartyName": "Hardware store",
                        "description": "Supplies",
                    },
                    {
                        "id": "t2",
                        "amount": {"value": "40.00", "currency": "USD"},
                        "status": "pending",
                        "postedAt": "2024-03-02T00:00:00Z",
                        "description": "Deposit",
                    },
                ]
            },
        )

    monkeypatch.setattr("requests.request", fake_request)

    result = _mercury(page_size=10).fetch_transactions(None)

    assert result.item_errors == []
    first, second = result.transactions
    assert (first.amount, first.currency) == (Decimal("-12.50"), "EUR")
    assert first.raw_description == "Hardware store"
    assert first.posted is True
    assert (second.amount, second.currency, second.posted) == (Decimal("40.00"), "USD", False)


def test_mercury_rejects_an_unreadable_cursor(monkeypatch) -> None:
    monkeypatch.setattr("requests.request", lambda *a, **k: _FakeResp(200, {"transactions": []}))

    with pytest.raises(ConnectorPermanentError):
        _mercury().fetch_transactions("17")


@pytest.mark.parametrize(
    "status, error_cls",
    [
        (401, ConnectorAuthError),
        (403, ConnectorAuthError),
        (429, ConnectorRateLimited),
        (500, ConnectorTransientError),
        (503, ConnectorTransientError),
        (400, ConnectorPermanentError),
        (404, ConnectorPermanentError),
    ],
)
def test_http_status_is_classified(monkeypatch, status, error_cls) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        return _FakeResp(status, {"error": "nope"}, headers={"Retry-After": "7"})

    monkeypatch.setattr("requests.request", fake_request)

    with pytest.raises(error_cls) as excinfo:
        _mercury().fetch_transactions(None)
    assert excinfo.value.source == "mercury"
    if status == 429:
        assert excinfo.value.retry_after == 7.0


def test_network_timeout_becomes_connector_timeout(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr("requests.request", fake_request)

    with pytest.raises(ConnectorTimeout):
        _mercury().fetch_transactions(None)


def test_missing_api_key_fails_before_any_request(monkeypatch) -> None:
    def fake_request(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr("requests.request", fake_request)
    connector = MercuryConnector(MercuryConfig(account_id="acc_1"), {})

    with pytest.raises(ConnectorAuthError):
        connector.fetch_transactions(None)
    ok, message = connector.test_connection()
    assert ok is False
    assert "API key" in message


def test_mercury_rejects_pushes() -> None:
    with pytest.raises(ConnectorPermanentError):
        _mercury().push_transactions([make_txn("wave", "w1", -100, "2024-03-01")])


# Wave


def test_wave_signs_amounts_by_direction(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        assert url == "https://api.waveapps.com/businesses/biz_1/transactions"
        assert params == {"page": 1, "page_size": 100}
        return _FakeResp(
            200,
            {
                "data": [
                    {
                        "id": "wav_777",
                        "date": "2024-03-02",
                        "description": "Rent payment",
                        "amount": {"value": "1200.00", "currency": {"code": "usd"}},
                        "direction": "WITHDRAWAL",
                        "account": {"name": "Rent Expense"},
                    },
                    {
                        "id": "wav_778",
                        "date": "2024-03-03",
                        "amount": {"value": "80.00", "currency": "USD"},
                        "direction": "DEPOSIT",
                    },
                    {
                        "id": "wav_779",
                        "date": "2024-03-03",
                        "amount": {"value": "1.00"},
                        "direction": "SIDEWAYS",
                    },
                ],
                "meta": {"total_pages": 1},
            },
        )

    monkeypatch.setattr("requests.request", fake_request)
    connector = _wave()

    result = connector.fetch_transactions(None)

    assert connector.amount_convention == AmountConvention.OUTFLOW_POSITIVE
    withdrawal, deposit = result.transactions
    assert withdrawal.amount == Decimal("1200.00")
    assert withdrawal.currency == "USD"
    assert withdrawal.raw_category == "Rent Expense"
    assert deposit.amount == Decimal("-80.00")
    assert [external_id for external_id, _ in result.item_errors] == ["wav_779"]
    # Last page: the cursor stays put so the next run re-reads it
    assert result.has_more is False
    assert result.next_cursor == "1"


def test_wave_advances_page_cursor_while_more_pages_exist(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        return _FakeResp(200, {"data": [], "meta": {"total_pages": 3}})

    monkeypatch.setattr("requests.request", fake_request)

    result = _wave().fetch_transactions("2")

    assert result.has_more is True
    assert result.next_cursor == "3"


def test_wave_without_business_id_is_an_auth_failure() -> None:
    connector = WaveConnector(WaveConfig(), {"api_key": "token"})
    with pytest.raises(ConnectorAuthError):
        connector.fetch_transactions(None)


def test_wave_push_sends_direction_and_treats_conflict_as_success(monkeypatch) -> None:
    bodies = []
    statuses = iter([201, 409, 500, 422])

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        assert method == "POST"
        bodies.append(json)
        status = next(statuses)
        return _FakeResp(status, {"data": {"id": "wave-1"}} if status == 201 else {"error": "x"})

    monkeypatch.setattr("requests.request", fake_request)
    batch = [
        make_txn("mercury", "m1", -120000, "2024-03-01", "Rent", category_id="rent"),
        make_txn("mercury", "m2", 5000, "2024-03-02", "Refund", category_id="other"),
        make_txn("mercury", "m3", -100, "2024-03-03", "Coffee", category_id="other"),
        make_txn("mercury", "m4", -200, "2024-03-04", "Broken", category_id="other"),
    ]

    results = _wave().push_transactions(batch)

    assert bodies[0]["externalId"] == batch[0].canonical_id
    assert bodies[0]["direction"] == "WITHDRAWAL"
    assert bodies[0]["amount"] == {"value": "1200.00", "currency": "USD"}
    assert bodies[0]["category"] == "rent"
    assert bodies[1]["direction"] == "DEPOSIT"

    assert [r.canonical_id for r in results] == [t.canonical_id for t in batch]
    assert results[0].ok and results[0].external_id == "wave-1"
    assert results[1].ok
    assert not results[2].ok and results[2].retryable
    assert not results[3].ok and not results[3].retryable


def test_wave_push_auth_failure_aborts_the_batch(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        return _FakeResp(401, {"error": "expired"})

    monkeypatch.setattr("requests.request", fake_request)

    with pytest.raises(ConnectorAuthError):
        _wave().push_transactions([make_txn("mercury", "m1", -100, "2024-03-01")])


# DoorLoop


def test_doorloop_resolves_account_names_as_vendor_category(monkeypatch) -> None:
    account_lookups = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        if url.endswith("/api/v1/transactions"):
            return _FakeResp(
                200,
                {
                    "data": [
                        {"id": "dl_1", "date": "2024-03-01", "amount": 1500, "account": "a1",
                         "description": "March rent"},
                        {"id": "dl_2", "date": "2024-03-02", "amount": -75, "account": "a1",
                         "status": "pending"},
                        {"id": "dl_3", "date": "2024-03-02", "amount": -10, "status": "void"},
                    ],
                    "total": 3,
                },
            )
        account_lookups.append(url)
        return _FakeResp(200, {"id": "a1", "name": "Rent Income"})

    monkeypatch.setattr("requests.request", fake_request)

    result = _doorloop().fetch_transactions(None)

    assert [t.external_id for t in result.transactions] == ["dl_1", "dl_2"]
    assert [t.raw_category for t in result.transactions] == ["Rent Income", "Rent Income"]
    assert result.transactions[1].posted is False
    assert len(account_lookups) == 1
    assert result.has_more is False


def test_doorloop_failure_mid_page_hands_back_partial_records(monkeypatch) -> None:
    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        if url.endswith("/api/v1/transactions"):
            return _FakeResp(
                200,
                {
                    "data": [
                        {"id": "dl_1", "date": "2024-03-01", "amount": 10, "category": "Utilities"},
                        {"id": "dl_2", "date": "2024-03-02", "amount": 20, "account": "a2"},
                    ],
                    "total": 40,
                },
            )
        return _FakeResp(503, {"error": "unavailable"})

    monkeypatch.setattr("requests.request", fake_request)

    with pytest.raises(ConnectorTransientError) as excinfo:
        _doorloop().fetch_transactions(None)

    assert [t.external_id for t in excinfo.value.partial] == ["dl_1"]


# Registry and credentials


def test_build_connectors_skips_disabled_connectors() -> None:
    config = load_config(None)
    config.connectors.doorloop.enabled = False
    credentials = StaticCredentialStore({"wave": {"api_key": "t", "business_id": "b"}})

    connectors = build_connectors(config, credentials)

    assert sorted(connectors) == ["mercury", "wave"]
    assert connectors["wave"]._business_id == "b"


def test_env_credentials_are_read_only(monkeypatch) -> None:
    monkeypatch.setenv("MERCURY_API_KEY", "secret")

    creds = EnvCredentialStore().get("mercury")

    assert dict(creds) == {"api_key": "secret"}
    assert dict(EnvCredentialStore().get("doorloop")) == {}
    with pytest.raises(TypeError):
        creds["api_key"] = "other"  # type: ignore[index]
