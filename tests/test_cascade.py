from __future__ import annotations

from ledger_sync.db.models import SyncStatus


async def test_syncing_the_last_link_syncs_the_payout(engine, ledger, fake_client) -> None:
    user = await ledger.user()
    first = await ledger.payment(user, amount_cents=10000)
    second = await ledger.payment(user, amount_cents=5000)
    payout = await ledger.payout()
    await ledger.link(payout, first, second)

    first_result = await engine.sync_payment(first.id)

    [not_ready] = first_result.cascaded
    assert not_ready.record_id == payout.id
    assert not_ready.error.code == "dependency_not_ready"
    assert fake_client.calls["Deposit"] == 0
    assert (await ledger.reload(payout)).sync_status == SyncStatus.FAILED

    second_result = await engine.sync_payment(second.id)

    [cascaded] = second_result.cascaded
    assert cascaded.status == SyncStatus.SYNCED
    assert cascaded.record_type == "payout"
    assert fake_client.calls["Deposit"] == 1
    assert fake_client.created_of("Deposit")[0]["TotalAmt"] == "150.00"
    stored = await ledger.reload(payout)
    assert stored.sync_status == SyncStatus.SYNCED
    assert stored.external_id == cascaded.external_id


async def test_refund_sync_cascades_to_its_payout(engine, ledger, fake_client) -> None:
    payment = await ledger.payment(await ledger.user(), amount_cents=10000)
    refund = await ledger.refund(payment, amount_cents=-2500)
    payout = await ledger.payout()
    await ledger.link(payout, payment, refund)
    await engine.sync_payment(payment.id)

    result = await engine.sync_refund(refund.id)

    [cascaded] = result.cascaded
    assert cascaded.status == SyncStatus.SYNCED
    assert fake_client.created_of("Deposit")[0]["TotalAmt"] == "75.00"


async def test_reused_result_does_not_cascade(engine, ledger, fake_client) -> None:
    payment = await ledger.payment(await ledger.user())
    await engine.sync_payment(payment.id)
    payout = await ledger.payout()
    await ledger.link(payout, payment)

    again = await engine.sync_payment(payment.id)

    assert again.reused is True
    assert again.cascaded == []
    assert fake_client.calls["Deposit"] == 0


async def test_failed_sync_does_not_cascade(engine, ledger, fake_client) -> None:
    payment = await ledger.payment(None)
    payout = await ledger.payout()
    await ledger.link(payout, payment)

    result = await engine.sync_payment(payment.id)

    assert result.status == SyncStatus.FAILED
    assert result.cascaded == []
    assert (await ledger.reload(payout)).sync_status == SyncStatus.PENDING


async def test_synced_payouts_are_not_rechecked(engine, ledger, fake_client) -> None:
    user = await ledger.user()
    payment = await ledger.payment(user)
    payout = await ledger.payout()
    await ledger.link(payout, payment)
    await engine.sync_payment(payment.id)
    assert fake_client.calls["Deposit"] == 1

    assert await engine.cascade.payouts_to_recheck("payment", payment.id) == []


async def test_payout_sync_never_cascades(engine, ledger) -> None:
    payout = await ledger.payout(amount_cents=1000)

    result = await engine.sync_payout(payout.id)

    assert result.status == SyncStatus.SYNCED
    assert result.cascaded == []
