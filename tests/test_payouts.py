from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from ledger_sync.db.models import Payments, Payouts, Refunds, SyncStatus
from ledger_sync.services.errors import DependencyNotReady
from ledger_sync.services.payouts import PayoutAggregator, ensure_links_synced, unsynced_links
from ledger_sync.services.resolver import AccountResolver

from conftest import make_settings
from fakes import FakeAccountingClient


def synced_payment(amount_cents: int, external_id: str, reference_id: str = "PAY") -> Payments:
    return Payments(
        id=uuid.uuid4(),
        reference_id=reference_id,
        amount_cents=amount_cents,
        currency="USD",
        sync_status=SyncStatus.SYNCED,
        external_id=external_id,
    )


def synced_refund(amount_cents: int, external_id: str, reference_id: str = "REF") -> Refunds:
    return Refunds(
        id=uuid.uuid4(),
        reference_id=reference_id,
        amount_cents=amount_cents,
        currency="USD",
        sync_status=SyncStatus.SYNCED,
        external_id=external_id,
    )


def make_payout(payments=(), refunds=(), **fields) -> Payouts:
    fields.setdefault("external_payout_id", "po_123")
    fields.setdefault("amount_cents", 0)
    fields.setdefault("fee_total_cents", 0)
    fields.setdefault("arrival_date", date(2025, 3, 4))
    return Payouts(
        id=uuid.uuid4(),
        currency="USD",
        payments=list(payments),
        refunds=list(refunds),
        **fields,
    )


def aggregator(client: FakeAccountingClient | None = None, **settings) -> PayoutAggregator:
    return PayoutAggregator(AccountResolver(client or FakeAccountingClient(), make_settings(**settings)))


async def test_linked_payout_nets_payments_and_refunds() -> None:
    payout = make_payout(
        payments=[synced_payment(10000, "501", "PAY-1"), synced_payment(5000, "502", "PAY-2")],
        refunds=[synced_refund(-2000, "601", "REF-1")],
        external_payout_id="po_abc",
    )

    params = await aggregator().build_deposit(payout)
    payload = params.to_payload()

    assert payload["TotalAmt"] == "130.00"
    assert payload["DepositToAccountRef"] == {"value": "acct-bank", "name": "Bank Account"}
    assert payload["Memo"] == "Stripe Payout: po_abc"
    assert payload["PrivateNote"] == "Payout includes 2 payments and 1 refunds"
    assert payload["TxnDate"] == "2025-03-04"
    assert [line["Amount"] for line in payload["Line"]] == ["100.00", "50.00", "-20.00"]
    assert [line["LinkedTxn"] for line in payload["Line"]] == [
        [{"TxnId": "501", "TxnType": "SalesReceipt"}],
        [{"TxnId": "502", "TxnType": "SalesReceipt"}],
        [{"TxnId": "601", "TxnType": "RefundReceipt"}],
    ]
    assert all(line["DetailType"] == "DepositLineDetail" for line in payload["Line"])


async def test_fee_line_is_subtracted_when_it_resolves() -> None:
    payout = make_payout(
        payments=[synced_payment(10000, "501")],
        fee_total_cents=320,
    )

    params = await aggregator(stripe_fee_item_id="item-fee").build_deposit(payout)
    payload = params.to_payload()

    fee_line = payload["Line"][-1]
    assert fee_line["Amount"] == "-3.20"
    assert fee_line["DepositLineDetail"] == {
        "AccountRef": {"value": "acct-fees", "name": "Stripe Fees"},
        "ClassRef": {"value": "class-admin", "name": "Administration"},
    }
    assert "LinkedTxn" not in fee_line
    assert params.total_amt == Decimal("96.80")


async def test_unresolvable_fee_line_is_omitted() -> None:
    client = FakeAccountingClient(accounts={"Bank Account": "acct-bank"})
    payout = make_payout(payments=[synced_payment(10000, "501")], fee_total_cents=320)

    params = await aggregator(client).build_deposit(payout)

    assert len(params.lines) == 1
    assert params.total_amt == Decimal("100.00")


async def test_zero_fee_adds_no_fee_line() -> None:
    client = FakeAccountingClient()
    payout = make_payout(payments=[synced_payment(10000, "501")])

    params = await aggregator(client).build_deposit(payout)

    assert len(params.lines) == 1
    assert client.calls["get_or_create_item"] == 0


async def test_payout_without_links_uses_its_own_amount() -> None:
    payout = make_payout(amount_cents=4200, description=None)

    params = await aggregator().build_deposit(payout)
    payload = params.to_payload()

    [line] = payload["Line"]
    assert line["Amount"] == "42.00"
    assert line["Description"] == "Stripe payout"
    assert line["DepositLineDetail"] == {
        "AccountRef": {"value": "acct-udf", "name": "Undeposited Funds"},
        "ClassRef": {"value": "class-admin", "name": "Administration"},
    }
    assert payload["TotalAmt"] == "42.00"
    assert payload["PrivateNote"] == "Payout includes 0 payments and 0 refunds"


def test_unsynced_links_block_the_deposit() -> None:
    pending_payment = synced_payment(10000, "501")
    pending_payment.sync_status = SyncStatus.PENDING
    pending_payment.external_id = None
    payout = make_payout(payments=[pending_payment, synced_payment(100, "502")])

    assert [item["record_id"] for item in unsynced_links(payout)] == [str(pending_payment.id)]
    with pytest.raises(DependencyNotReady) as excinfo:
        ensure_links_synced(payout)
    assert excinfo.value.code == "dependency_not_ready"
    assert excinfo.value.reason == "transactions_not_fully_synced"
    assert excinfo.value.details["pending"][0]["record_type"] == "payment"
