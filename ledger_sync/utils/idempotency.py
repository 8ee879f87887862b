from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_sync.db.models import WebhookEvents


def sha256_hex(value: bytes | str) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def fingerprint_payload(payload: Any) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(serialized)


def build_event_key(realm_id: Optional[str], entity_name: str, entity_id: str, operation: str) -> str:
    return ":".join([realm_id or "", entity_name, entity_id, operation])


async def register_webhook_event(
    session: AsyncSession,
    *,
    provider: str,
    event_key: str,
    entity_name: str,
    entity_id: str,
    operation: str,
    realm_id: Optional[str],
    payload: Any,
) -> Tuple[WebhookEvents, bool]:
    """Store a notification once. Returns the stored event and whether it was a duplicate."""
    result = await session.execute(
        select(WebhookEvents).where(WebhookEvents.event_key == event_key)
    )
    existing = result.scalar_one_or_none()
    if existing:
        return existing, True

    record = WebhookEvents(
        provider=provider,
        event_key=event_key,
        entity_name=entity_name,
        entity_id=entity_id,
        operation=operation,
        realm_id=realm_id,
        payload_hash=fingerprint_payload(payload),
        payload=payload,
    )
    session.add(record)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(WebhookEvents).where(WebhookEvents.event_key == event_key)
        )
        return result.scalar_one(), True
    return record, False
