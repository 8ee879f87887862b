from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from ledger_sync.core.security import decrypt_refresh_token, encrypt_refresh_token
from ledger_sync.db import repo
from ledger_sync.db.models import QuickBooksConnections
from ledger_sync.schemas.documents import CustomerParams, DepositLine, DepositLineDetail, DepositParams, Ref
from ledger_sync.services.qbo_client import QuickBooksApiError, QuickBooksClient, QuickBooksOAuthError

from conftest import make_settings
from fakes import QuickBooksStub


@pytest.fixture
def stub() -> QuickBooksStub:
    return QuickBooksStub()


@pytest.fixture
def qbo(session_factory, stub) -> QuickBooksClient:
    settings = make_settings(qbo_refresh_token="seed-refresh")
    return QuickBooksClient(session_factory, settings, http_client_factory=stub.client_factory)


def deposit_params() -> DepositParams:
    line = DepositLine(
        amount=Decimal("42.00"),
        detail=DepositLineDetail(account_ref=Ref(value="acct-udf", name="Undeposited Funds")),
    )
    return DepositParams(
        deposit_to_account_ref=Ref(value="acct-bank", name="Bank Account"),
        lines=[line],
        total_amt=Decimal("42.00"),
    )


async def test_first_call_seeds_and_refreshes_the_connection(qbo, stub, session_factory) -> None:
    stub.api_responses.append(httpx.Response(200, json={"Deposit": {"Id": "77", "TotalAmt": 42.0, "SyncToken": "0"}}))

    document = await qbo.create_deposit(deposit_params())

    assert document.id == "77"
    assert document.doc_type == "Deposit"
    assert document.total_amt == Decimal("42.0")
    assert document.sync_token == "0"
    [token_request] = stub.token_requests()
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert b"refresh_token=seed-refresh" in token_request.content
    [api_request] = stub.api_requests()
    assert api_request.method == "POST"
    assert str(api_request.url).startswith(
        "https://sandbox-quickbooks.api.intuit.com/v3/company/realm-1/deposit"
    )
    assert api_request.url.params["minorversion"] == "65"
    assert api_request.headers["Authorization"] == "Bearer access-1"
    body = json.loads(api_request.content)
    assert body["TotalAmt"] == "42.00"
    assert body["Line"][0]["DetailType"] == "DepositLineDetail"

    async with session_factory() as session:
        connection = await repo.get_connection(session, realm_id="realm-1", environment="sandbox")
    assert connection.access_token == "access-1"
    assert connection.refresh_counter == 1
    assert decrypt_refresh_token(make_settings().fernet_key, connection.refresh_token_enc) == "refresh-1"


async def test_valid_token_is_reused(qbo, stub) -> None:
    stub.api_responses.extend(
        [
            httpx.Response(200, json={"QueryResponse": {"Class": [{"Id": "5", "Name": "Events"}]}}),
            httpx.Response(200, json={"QueryResponse": {}}),
        ]
    )

    assert await qbo.query_class_by_name("Events") == "5"
    assert await qbo.query_class_by_name("Missing") is None
    assert len(stub.token_requests()) == 1
    query = stub.api_requests()[0].url.params["query"]
    assert "FullyQualifiedName = 'Events'" in query
    assert "Active = true" in query


async def test_near_expiry_token_is_refreshed(session_factory, stub) -> None:
    settings = make_settings()
    async with session_factory() as session:
        await repo.save_connection(
            session,
            QuickBooksConnections(
                realm_id="realm-1",
                environment="sandbox",
                refresh_token_enc=encrypt_refresh_token(settings.fernet_key, "stored-refresh"),
                access_token="old-access",
                access_expires_at=datetime.now(timezone.utc) + timedelta(minutes=2),
                refresh_counter=3,
            ),
        )
    client = QuickBooksClient(session_factory, settings, http_client_factory=stub.client_factory)

    token = await client.ensure_valid_access_token()

    assert token == "access-1"
    assert b"refresh_token=stored-refresh" in stub.token_requests()[0].content


async def test_unauthorized_response_forces_one_refresh(qbo, stub) -> None:
    stub.api_responses.extend(
        [
            httpx.Response(401, json={"fault": "expired"}),
            httpx.Response(200, json={"QueryResponse": {"Account": [{"Id": "12"}]}}),
        ]
    )

    assert await qbo.query_account_by_name("Bank Account") == "12"
    assert len(stub.token_requests()) == 2
    assert [request.headers["Authorization"] for request in stub.api_requests()] == [
        "Bearer access-1",
        "Bearer access-2",
    ]


async def test_sub_accounts_use_fully_qualified_names(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(200, json={"QueryResponse": {}}))

    assert await qbo.query_account_by_name("Expenses:Bank's Fees") is None
    query = stub.api_requests()[0].url.params["query"]
    assert "FullyQualifiedName = 'Expenses:Bank''s Fees'" in query


async def test_missing_connection_without_seed_token(session_factory, stub) -> None:
    client = QuickBooksClient(session_factory, make_settings(), http_client_factory=stub.client_factory)

    with pytest.raises(QuickBooksOAuthError):
        await client.query_class_by_name("Events")
    assert stub.requests == []


async def test_rejected_refresh_is_an_oauth_error(qbo, stub) -> None:
    stub.token_status = 400

    with pytest.raises(QuickBooksOAuthError):
        await qbo.query_class_by_name("Events")


async def test_server_errors_are_retried_then_reported(qbo, stub) -> None:
    stub.api_responses.extend(
        [
            httpx.Response(503, text="unavailable"),
            httpx.Response(500, text="still down"),
        ]
    )

    with pytest.raises(QuickBooksApiError) as excinfo:
        await qbo.create_deposit(deposit_params())

    assert excinfo.value.status_code == 500
    assert excinfo.value.body == "still down"
    assert len(stub.api_requests()) == 2


async def test_throttled_request_succeeds_on_retry(qbo, stub) -> None:
    stub.api_responses.extend(
        [
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"Deposit": {"Id": "78"}}),
        ]
    )

    document = await qbo.create_deposit(deposit_params())

    assert document.id == "78"


async def test_response_without_id_is_an_api_error(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(200, json={"Deposit": {}}))

    with pytest.raises(QuickBooksApiError):
        await qbo.create_deposit(deposit_params())


async def test_get_or_create_item_prefers_existing(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(200, json={"QueryResponse": {"Item": [{"Id": "31"}]}}))

    assert await qbo.get_or_create_item("Donations") == "31"
    assert len(stub.api_requests()) == 1


async def test_get_or_create_item_creates_missing(qbo, stub) -> None:
    stub.api_responses.extend(
        [
            httpx.Response(200, json={"QueryResponse": {}}),
            httpx.Response(200, json={"Item": {"Id": "32", "Name": "Donations"}}),
        ]
    )

    item_id = await qbo.get_or_create_item("Donations", income_account_ref={"value": "80"})

    assert item_id == "32"
    body = json.loads(stub.api_requests()[1].content)
    assert body == {"Name": "Donations", "Type": "Service", "Active": True, "IncomeAccountRef": {"value": "80"}}


async def test_get_or_create_item_recovers_from_a_duplicate(qbo, stub) -> None:
    duplicate = {"Fault": {"Error": [{"code": "6240", "Message": "Duplicate Name Exists Error"}]}}
    stub.api_responses.extend(
        [
            httpx.Response(200, json={"QueryResponse": {}}),
            httpx.Response(400, json=duplicate),
            httpx.Response(200, json={"QueryResponse": {"Item": [{"Id": "33"}]}}),
        ]
    )

    assert await qbo.get_or_create_item("Donations") == "33"


async def test_create_customer_reuses_duplicate_display_name(qbo, stub) -> None:
    duplicate = {"Fault": {"Error": [{"code": "6240"}]}}
    stub.api_responses.extend(
        [
            httpx.Response(400, json=duplicate),
            httpx.Response(200, json={"QueryResponse": {"Customer": [{"Id": "44"}]}}),
        ]
    )

    customer_id = await qbo.create_customer(CustomerParams(display_name="Ada Lovelace"))

    assert customer_id == "44"
    assert "DisplayName = 'Ada Lovelace'" in stub.api_requests()[1].url.params["query"]


async def test_create_customer_other_errors_propagate(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(400, json={"Fault": {"Error": [{"code": "2020"}]}}))

    with pytest.raises(QuickBooksApiError) as excinfo:
        await qbo.create_customer(CustomerParams(display_name="Ada Lovelace"))
    assert excinfo.value.status_code == 400


async def test_api_base_url_override(session_factory, stub) -> None:
    settings = make_settings(qbo_refresh_token="seed", qbo_api_base_url="https://qbo.test/")
    client = QuickBooksClient(session_factory, settings, http_client_factory=stub.client_factory)
    stub.api_responses.append(httpx.Response(200, json={"QueryResponse": {}}))

    await client.query_class_by_name("Events")

    assert str(stub.api_requests()[0].url).startswith("https://qbo.test/v3/company/realm-1/query")


async def test_non_json_success_body_is_an_api_error(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(QuickBooksApiError) as excinfo:
        await qbo.create_deposit(deposit_params())

    assert excinfo.value.status_code == 200
    assert excinfo.value.body == "<html>maintenance</html>"


async def test_non_numeric_total_is_an_api_error(qbo, stub) -> None:
    stub.api_responses.append(httpx.Response(200, json={"Deposit": {"Id": "79", "TotalAmt": "n/a"}}))

    with pytest.raises(QuickBooksApiError):
        await qbo.create_deposit(deposit_params())


async def test_non_json_token_response_is_an_oauth_error(qbo, stub) -> None:
    stub.token_text = "<html>gateway</html>"

    with pytest.raises(QuickBooksOAuthError):
        await qbo.query_class_by_name("Events")
    assert stub.api_requests() == []
