from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from ledger_sync.core import logging as logging_utils
from ledger_sync.schemas.sync import WebhookAck, WebhookPayload
from ledger_sync.services.webhooks import WebhookProcessor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("ledger_sync.api.webhooks")


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


@router.post("/quickbooks", response_model=WebhookAck)
async def quickbooks_webhook(
    payload: WebhookPayload,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookAck:
    realm_ids = {item.realm_id for item in payload.event_notifications if item.realm_id}
    if len(realm_ids) == 1:
        logging_utils.set_request_context(realm_id=next(iter(realm_ids)))
    raw = payload.model_dump(by_alias=True, exclude_none=True)
    intake = await processor.register(payload, raw)
    if intake.accepted:
        background_tasks.add_task(processor.reconcile_many, list(intake.accepted))
    return WebhookAck(
        accepted=len(intake.accepted),
        duplicates=intake.duplicates,
        skipped=intake.skipped,
    )
