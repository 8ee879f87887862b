from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional, Sequence, Union

from pydantic import ValidationError

from ledger_sync.db.models import LedgerEntries, Payments, Refunds, SyncStatus
from ledger_sync.schemas.documents import (
    Ref,
    RefundReceiptParams,
    SalesItemLineDetail,
    SalesLine,
    SalesReceiptParams,
)
from ledger_sync.services.errors import InvalidRecord
from ledger_sync.services.money import minor_units_to_decimal, sum_amounts
from ledger_sync.services.resolver import AccountResolver

# Either a resolved customer or a coroutine factory invoked once every line has resolved.
CustomerSource = Union[Ref, Callable[[], Awaitable[Ref]]]


@dataclass(frozen=True)
class RevenueComponent:
    entity_type: Optional[str]
    property: Optional[str]
    amount_cents: int
    description: Optional[str]


def revenue_components(payment: Payments, entries: Sequence[LedgerEntries]) -> list[RevenueComponent]:
    """Split a payment into the revenue components reported as separate lines.

    Ledger entries are used only when their positive amounts add up to the
    payment exactly; otherwise the whole payment is one component.
    """
    positive = [entry for entry in entries if entry.amount_cents > 0]
    if positive and sum(entry.amount_cents for entry in positive) == payment.amount_cents:
        return [
            RevenueComponent(
                entity_type=entry.entity_type,
                property=entry.property or payment.property,
                amount_cents=entry.amount_cents,
                description=entry.description,
            )
            for entry in positive
        ]
    return [
        RevenueComponent(
            entity_type=payment.entity_type,
            property=payment.property,
            amount_cents=payment.amount_cents,
            description=None,
        )
    ]


def inherited_classification(
    refund: Refunds,
    payment: Payments,
    entries: Sequence[LedgerEntries] = (),
) -> tuple[Optional[str], Optional[str]]:
    """Entity type and property used to class a refund.

    The refund's own values win; missing ones come from the origin payment and,
    failing that, from the payment's ledger entries when they agree on a single
    classification. Anything still missing is left ``None`` for the resolver to
    reject.
    """
    entity_type = refund.entity_type or payment.entity_type
    property = refund.property or payment.property
    if entity_type is None or (entity_type == "booking" and property is None):
        classifications = {
            (entry.entity_type, entry.property) for entry in entries if entry.amount_cents > 0
        }
        if len(classifications) == 1:
            entry_type, entry_property = classifications.pop()
            entity_type = entity_type or entry_type
            property = property or entry_property
    return entity_type, property


def _error_messages(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]


async def _customer_ref(source: CustomerSource) -> Ref:
    if isinstance(source, Ref):
        return source
    return await source()


def _txn_date(explicit: Optional[date], created_at) -> Optional[date]:
    if explicit is not None:
        return explicit
    if created_at is None:
        return None
    return created_at.date()


class DocumentBuilder:
    def __init__(self, resolver: AccountResolver) -> None:
        self.resolver = resolver

    async def build_sales_receipt(
        self,
        payment: Payments,
        entries: Sequence[LedgerEntries],
        customer: CustomerSource,
    ) -> SalesReceiptParams:
        if payment.amount_cents <= 0:
            raise InvalidRecord(
                "Payment amount must be positive",
                reason="non_positive_amount",
                details={"amount_cents": payment.amount_cents},
            )
        lines: list[SalesLine] = []
        for component in revenue_components(payment, entries):
            mapping = await self.resolver.resolve_line(component.entity_type, component.property)
            amount = minor_units_to_decimal(component.amount_cents, payment.currency)
            lines.append(
                SalesLine(
                    amount=amount,
                    detail=SalesItemLineDetail(
                        item_ref=mapping.item_ref,
                        quantity=1,
                        unit_price=amount,
                        class_ref=mapping.class_ref,
                    ),
                    description=component.description or f"Payment {payment.reference_id}",
                )
            )
        deposit_ref = await self.resolver.undeposited_funds_account()
        customer_ref = await _customer_ref(customer)
        note = None
        if payment.external_payment_id:
            note = f"External Payment ID: {payment.external_payment_id}"
        try:
            return SalesReceiptParams(
                customer_ref=customer_ref,
                deposit_to_account_ref=deposit_ref,
                lines=lines,
                total_amt=sum_amounts(line.amount for line in lines),
                txn_date=_txn_date(payment.payment_date, payment.created_at),
                memo=f"Payment: {payment.reference_id}",
                private_note=note,
            )
        except ValidationError as exc:
            raise InvalidRecord(
                "Sales receipt failed validation",
                reason="document_invalid",
                details={"errors": _error_messages(exc)},
            ) from exc

    async def build_refund_receipt(
        self,
        refund: Refunds,
        payment: Payments,
        customer: CustomerSource,
        entries: Sequence[LedgerEntries] = (),
    ) -> RefundReceiptParams:
        magnitude = abs(refund.amount_cents)
        if magnitude == 0:
            raise InvalidRecord(
                "Refund amount must be non-zero",
                reason="zero_amount",
                details={"amount_cents": refund.amount_cents},
            )
        entity_type, property = inherited_classification(refund, payment, entries)
        mapping = await self.resolver.resolve_line(entity_type, property)
        amount = minor_units_to_decimal(magnitude, refund.currency)
        line = SalesLine(
            amount=amount,
            detail=SalesItemLineDetail(
                item_ref=mapping.item_ref,
                quantity=1,
                unit_price=amount,
                class_ref=mapping.class_ref,
            ),
            description=f"Refund {refund.reference_id}",
        )
        refund_from_ref = await self.resolver.undeposited_funds_account()
        customer_ref = await _customer_ref(customer)
        note = f"External Refund ID: {refund.external_refund_id or refund.reference_id}"
        if payment.sync_status == SyncStatus.SYNCED and payment.external_id:
            note = f"{note}\nOriginal Payment SalesReceipt: {payment.external_id}"
        try:
            return RefundReceiptParams(
                customer_ref=customer_ref,
                refund_from_account_ref=refund_from_ref,
                lines=[line],
                total_amt=line.amount,
                txn_date=_txn_date(refund.refund_date, refund.created_at),
                memo=f"Refund: {refund.reference_id}",
                private_note=note,
            )
        except ValidationError as exc:
            raise InvalidRecord(
                "Refund receipt failed validation",
                reason="document_invalid",
                details={"errors": _error_messages(exc)},
            ) from exc
