from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.db import repo
from ledger_sync.db.models import SyncStatus
from ledger_sync.schemas.sync import WebhookPayload
from ledger_sync.utils.idempotency import build_event_key, register_webhook_event

logger = logging.getLogger("ledger_sync.webhooks")

PROVIDER = "quickbooks"

# External document type -> local record type that owns it.
WATCHED_ENTITIES: dict[str, str] = {
    "SalesReceipt": "payment",
    "RefundReceipt": "refund",
    "Deposit": "payout",
}

REMOVAL_OPERATIONS = frozenset({"Delete", "Void"})


class WebhookOutcome(str):
    CONFIRMED = "confirmed"
    EXTERNAL_REMOVED = "external_removed"
    UNMATCHED = "unmatched"


@dataclass
class WebhookIntake:
    accepted: list[uuid.UUID] = field(default_factory=list)
    duplicates: int = 0
    skipped: int = 0


class WebhookProcessor:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def register(self, payload: WebhookPayload, raw: dict[str, Any]) -> WebhookIntake:
        intake = WebhookIntake()
        async with self.session_factory() as session:
            for notification in payload.event_notifications:
                for entity in notification.data_change_event.entities:
                    if entity.name not in WATCHED_ENTITIES:
                        intake.skipped += 1
                        continue
                    event_key = build_event_key(
                        notification.realm_id, entity.name, entity.id, entity.operation
                    )
                    event, duplicate = await register_webhook_event(
                        session,
                        provider=PROVIDER,
                        event_key=event_key,
                        entity_name=entity.name,
                        entity_id=entity.id,
                        operation=entity.operation,
                        realm_id=notification.realm_id,
                        payload=raw,
                    )
                    if duplicate:
                        intake.duplicates += 1
                        logger.info("webhook_duplicate", extra={"event_key": event_key})
                        continue
                    intake.accepted.append(event.id)
        logger.info(
            "webhook_registered",
            extra={
                "accepted": len(intake.accepted),
                "duplicates": intake.duplicates,
                "skipped": intake.skipped,
            },
        )
        return intake

    async def reconcile(self, event_id: uuid.UUID) -> str:
        """Compare one registered notification with the local record it refers to."""
        async with self.session_factory() as session:
            event = await repo.get_webhook_event(session, event_id)
            if event is None:
                raise LookupError(f"webhook event {event_id} does not exist")
            if event.outcome is not None:
                return event.outcome
            record_type = WATCHED_ENTITIES[event.entity_name]
            record = await repo.find_record_by_external_id(
                session, repo.RECORD_MODELS[record_type], event.entity_id
            )
            extra = {
                "event_key": event.event_key,
                "record_type": record_type,
                "external_id": event.entity_id,
                "operation": event.operation,
            }
            if record is None:
                outcome = WebhookOutcome.UNMATCHED
                logger.info("webhook_unmatched", extra=extra)
            elif event.operation in REMOVAL_OPERATIONS and record.sync_status == SyncStatus.SYNCED:
                outcome = WebhookOutcome.EXTERNAL_REMOVED
                logger.warning("webhook_external_removed", extra={**extra, "record_id": str(record.id)})
            else:
                outcome = WebhookOutcome.CONFIRMED
                logger.info("webhook_confirmed", extra={**extra, "record_id": str(record.id)})
            await repo.mark_webhook_event_processed(session, event, outcome=outcome)
            return outcome

    async def reconcile_many(self, event_ids: list[uuid.UUID]) -> None:
        for event_id in event_ids:
            await self.reconcile(event_id)
