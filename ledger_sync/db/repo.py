from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence, Type, Union

from sqlalchemy import func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger_sync.db.models import (
    LedgerEntries,
    Payments,
    Payouts,
    QuickBooksConnections,
    Refunds,
    SyncStatus,
    Users,
    WebhookEvents,
    payout_payments,
    payout_refunds,
)

RecordModel = Union[Type[Payments], Type[Refunds], Type[Payouts]]
LedgerRecord = Union[Payments, Refunds, Payouts]

RECORD_MODELS: dict[str, RecordModel] = {
    "payment": Payments,
    "refund": Refunds,
    "payout": Payouts,
}


class LinkConflictError(ValueError):
    """Raised when a transaction is already linked to a different payout."""

    def __init__(self, record_type: str, record_id: uuid.UUID, payout_id: uuid.UUID):
        self.record_type = record_type
        self.record_id = record_id
        self.payout_id = payout_id
        super().__init__(f"{record_type} {record_id} is already linked to payout {payout_id}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_record(
    session: AsyncSession,
    model: RecordModel,
    record_id: uuid.UUID,
) -> Optional[LedgerRecord]:
    # populate_existing so a record already in the identity map is re-read from the row.
    result = await session.execute(
        select(model)
        .where(model.id == record_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payout_with_links(
    session: AsyncSession,
    payout_id: uuid.UUID,
) -> Optional[Payouts]:
    result = await session.execute(
        select(Payouts)
        .where(Payouts.id == payout_id)
        .options(selectinload(Payouts.payments), selectinload(Payouts.refunds))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> Optional[Users]:
    result = await session.execute(
        select(Users)
        .where(Users.id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_ledger_entries(
    session: AsyncSession,
    payment_id: uuid.UUID,
) -> Sequence[LedgerEntries]:
    result = await session.execute(
        select(LedgerEntries)
        .where(LedgerEntries.payment_id == payment_id)
        .order_by(LedgerEntries.created_at, LedgerEntries.id)
    )
    return result.scalars().all()


async def claim_customer_id(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    customer_id: str,
) -> str:
    """Store ``customer_id`` unless the user already has one; return the stored id."""
    await session.execute(
        update(Users)
        .where(Users.id == user_id, Users.qbo_customer_id.is_(None))
        .values(qbo_customer_id=customer_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    user = await get_user(session, user_id)
    if user is None or user.qbo_customer_id is None:
        return customer_id
    return user.qbo_customer_id


async def mark_synced(
    session: AsyncSession,
    model: RecordModel,
    record_id: uuid.UUID,
    *,
    external_id: str,
    response: Optional[dict[str, Any]],
) -> bool:
    """Transition a record to synced. Returns False when another attempt already did."""
    now = _now()
    result = await session.execute(
        update(model)
        .where(model.id == record_id, model.sync_status != SyncStatus.SYNCED)
        .values(
            sync_status=SyncStatus.SYNCED,
            external_id=external_id,
            external_response=response,
            sync_error=None,
            synced_at=now,
            last_sync_attempt_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def mark_failed(
    session: AsyncSession,
    model: RecordModel,
    record_id: uuid.UUID,
    *,
    error: dict[str, Any],
) -> bool:
    result = await session.execute(
        update(model)
        .where(model.id == record_id, model.sync_status != SyncStatus.SYNCED)
        .values(
            sync_status=SyncStatus.FAILED,
            sync_error=error,
            last_sync_attempt_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def reset_failed(
    session: AsyncSession,
    model: RecordModel,
    record_id: uuid.UUID,
) -> bool:
    result = await session.execute(
        update(model)
        .where(model.id == record_id, model.sync_status == SyncStatus.FAILED)
        .values(sync_status=SyncStatus.PENDING)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def list_unsynced_ids(
    session: AsyncSession,
    model: RecordModel,
    *,
    limit: int,
    skip_failed_codes: Sequence[str] = (),
) -> list[uuid.UUID]:
    """List unsynced ids oldest first, leaving out failures with one of ``skip_failed_codes``."""
    query = select(model.id).where(model.sync_status != SyncStatus.SYNCED)
    if skip_failed_codes:
        error_code = func.coalesce(model.sync_error["code"].as_string(), "")
        query = query.where(
            or_(model.sync_status != SyncStatus.FAILED, error_code.not_in(skip_failed_codes))
        )
    result = await session.execute(query.order_by(model.created_at).limit(limit))
    return list(result.scalars().all())


async def list_unsynced_payout_ids_for(
    session: AsyncSession,
    *,
    record_type: str,
    record_id: uuid.UUID,
) -> list[uuid.UUID]:
    if record_type == "payment":
        link_table, link_column = payout_payments, payout_payments.c.payment_id
    elif record_type == "refund":
        link_table, link_column = payout_refunds, payout_refunds.c.refund_id
    else:
        raise ValueError(f"Payouts do not link {record_type} records")
    result = await session.execute(
        select(Payouts.id)
        .join(link_table, link_table.c.payout_id == Payouts.id)
        .where(link_column == record_id, Payouts.sync_status != SyncStatus.SYNCED)
        .order_by(Payouts.created_at)
    )
    return list(result.scalars().all())


async def link_payment_to_payout(
    session: AsyncSession,
    *,
    payout_id: uuid.UUID,
    payment_id: uuid.UUID,
) -> bool:
    return await _link(
        session,
        table=payout_payments,
        column="payment_id",
        record_type="payment",
        payout_id=payout_id,
        record_id=payment_id,
    )


async def link_refund_to_payout(
    session: AsyncSession,
    *,
    payout_id: uuid.UUID,
    refund_id: uuid.UUID,
) -> bool:
    return await _link(
        session,
        table=payout_refunds,
        column="refund_id",
        record_type="refund",
        payout_id=payout_id,
        record_id=refund_id,
    )


async def _link(
    session: AsyncSession,
    *,
    table,
    column: str,
    record_type: str,
    payout_id: uuid.UUID,
    record_id: uuid.UUID,
) -> bool:
    """Insert a payout link. Returns False if the exact link already exists."""
    try:
        await session.execute(insert(table).values({"payout_id": payout_id, column: record_id}))
        await session.commit()
        return True
    except IntegrityError:
        await session.rollback()
    result = await session.execute(
        select(table.c.payout_id).where(table.c[column] == record_id)
    )
    existing = result.scalar_one_or_none()
    if existing is None:
        # Integrity failure came from a missing payout or record, not the uniqueness rule.
        raise LookupError(f"payout {payout_id} or {record_type} {record_id} does not exist")
    if existing != payout_id:
        raise LinkConflictError(record_type, record_id, existing)
    return False


async def find_record_by_external_id(
    session: AsyncSession,
    model: RecordModel,
    external_id: str,
) -> Optional[LedgerRecord]:
    result = await session.execute(
        select(model).where(model.external_id == external_id).limit(1)
    )
    return result.scalar_one_or_none()


async def get_connection(
    session: AsyncSession,
    *,
    realm_id: str,
    environment: str,
) -> Optional[QuickBooksConnections]:
    result = await session.execute(
        select(QuickBooksConnections).where(
            QuickBooksConnections.realm_id == realm_id,
            QuickBooksConnections.environment == environment,
        )
    )
    return result.scalar_one_or_none()


async def save_connection(
    session: AsyncSession,
    connection: QuickBooksConnections,
) -> QuickBooksConnections:
    session.add(connection)
    await session.commit()
    return connection


async def get_webhook_event(
    session: AsyncSession,
    event_id: uuid.UUID,
) -> Optional[WebhookEvents]:
    return await session.get(WebhookEvents, event_id)


async def mark_webhook_event_processed(
    session: AsyncSession,
    event: WebhookEvents,
    *,
    outcome: str,
) -> None:
    event.outcome = outcome
    event.processed_at = _now()
    await session.commit()
