from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from ledger_sync.db.models import Payouts, SyncStatus
from ledger_sync.schemas.documents import DepositLine, DepositLineDetail, DepositParams, LinkedTxn
from ledger_sync.services.errors import DependencyNotReady, InvalidRecord
from ledger_sync.services.money import minor_units_to_decimal, sum_amounts
from ledger_sync.services.resolver import AccountResolver

logger = logging.getLogger("ledger_sync.services.payouts")


def unsynced_links(payout: Payouts) -> list[dict[str, Any]]:
    pending: list[dict[str, Any]] = []
    for payment in payout.payments:
        if payment.sync_status != SyncStatus.SYNCED or not payment.external_id:
            pending.append({"record_type": "payment", "record_id": str(payment.id), "sync_status": payment.sync_status})
    for refund in payout.refunds:
        if refund.sync_status != SyncStatus.SYNCED or not refund.external_id:
            pending.append({"record_type": "refund", "record_id": str(refund.id), "sync_status": refund.sync_status})
    return pending


def ensure_links_synced(payout: Payouts) -> None:
    pending = unsynced_links(payout)
    if pending:
        raise DependencyNotReady(
            f"{len(pending)} linked transaction(s) are not synced yet",
            details={"pending": pending},
        )


class PayoutAggregator:
    def __init__(self, resolver: AccountResolver) -> None:
        self.resolver = resolver

    async def build_deposit(self, payout: Payouts) -> DepositParams:
        ensure_links_synced(payout)
        if payout.payments or payout.refunds:
            lines = await self._linked_lines(payout)
        else:
            lines = await self._unlinked_lines(payout)
        bank_ref = await self.resolver.bank_account()
        txn_date = payout.arrival_date
        if txn_date is None and payout.created_at is not None:
            txn_date = payout.created_at.date()
        try:
            return DepositParams(
                deposit_to_account_ref=bank_ref,
                lines=lines,
                total_amt=sum_amounts(line.amount for line in lines),
                txn_date=txn_date,
                memo=f"Stripe Payout: {payout.external_payout_id}",
                private_note=(
                    f"Payout includes {len(payout.payments)} payments and {len(payout.refunds)} refunds"
                ),
            )
        except ValidationError as exc:
            raise InvalidRecord(
                "Deposit failed validation",
                reason="document_invalid",
                details={"errors": [error["msg"] for error in exc.errors()]},
            ) from exc

    async def _linked_lines(self, payout: Payouts) -> list[DepositLine]:
        lines: list[DepositLine] = []
        for payment in payout.payments:
            lines.append(
                DepositLine(
                    amount=minor_units_to_decimal(payment.amount_cents, payment.currency),
                    detail=DepositLineDetail(),
                    linked_txn=[LinkedTxn(txn_id=payment.external_id, txn_type="SalesReceipt")],
                    description=f"Payment {payment.reference_id}",
                )
            )
        for refund in payout.refunds:
            lines.append(
                DepositLine(
                    amount=-minor_units_to_decimal(abs(refund.amount_cents), refund.currency),
                    detail=DepositLineDetail(),
                    linked_txn=[LinkedTxn(txn_id=refund.external_id, txn_type="RefundReceipt")],
                    description=f"Refund {refund.reference_id}",
                )
            )
        if payout.fee_total_cents:
            fee = await self.resolver.resolve_fee_line()
            if fee is None:
                logger.warning(
                    "payout_fee_line_skipped",
                    extra={"payout_id": str(payout.id), "fee_total_cents": payout.fee_total_cents},
                )
            else:
                lines.append(
                    DepositLine(
                        amount=-minor_units_to_decimal(payout.fee_total_cents, payout.currency),
                        detail=DepositLineDetail(account_ref=fee.account_ref, class_ref=fee.class_ref),
                        description=f"Stripe fees for payout {payout.external_payout_id}",
                    )
                )
        return lines

    async def _unlinked_lines(self, payout: Payouts) -> list[DepositLine]:
        account_ref = await self.resolver.undeposited_funds_account()
        class_ref = await self.resolver.administration_class()
        return [
            DepositLine(
                amount=minor_units_to_decimal(payout.amount_cents, payout.currency),
                detail=DepositLineDetail(account_ref=account_ref, class_ref=class_ref),
                description=payout.description or "Stripe payout",
            )
        ]
