from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ledger_sync.core.config import Settings, get_settings
from ledger_sync.db.repo import LinkConflictError
from ledger_sync.schemas.sync import (
    LinkResponse,
    ResetResponse,
    SweepResponse,
    SyncResultResponse,
    SyncStateResponse,
)
from ledger_sync.services.engine import LedgerSyncEngine
from ledger_sync.services.sync import NOT_FOUND, SyncResult
from ledger_sync.utils.validators import normalize_limit, parse_uuid, resolve_record_type


router = APIRouter(tags=["sync"])
logger = logging.getLogger("ledger_sync.api.sync")


def get_sync_engine(request: Request) -> LedgerSyncEngine:
    return request.app.state.sync_engine


def _to_response(result: SyncResult) -> SyncResultResponse:
    if result.status == NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{result.record_type.capitalize()} '{result.record_id}' not found",
        )
    return SyncResultResponse.from_result(result)


@router.post("/sync/payments/{payment_id}", response_model=SyncResultResponse)
async def sync_payment(
    payment_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> SyncResultResponse:
    result = await engine.sync_payment(parse_uuid(payment_id, "payment_id"))
    return _to_response(result)


@router.post("/sync/refunds/{refund_id}", response_model=SyncResultResponse)
async def sync_refund(
    refund_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> SyncResultResponse:
    result = await engine.sync_refund(parse_uuid(refund_id, "refund_id"))
    return _to_response(result)


@router.post("/sync/payouts/{payout_id}", response_model=SyncResultResponse)
async def sync_payout(
    payout_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> SyncResultResponse:
    result = await engine.sync_payout(parse_uuid(payout_id, "payout_id"))
    return _to_response(result)


@router.post("/sync/sweep", response_model=SweepResponse)
async def sweep(
    limit: Optional[int] = Query(default=None),
    engine: LedgerSyncEngine = Depends(get_sync_engine),
    settings: Settings = Depends(get_settings),
) -> SweepResponse:
    batch = normalize_limit(limit, default=settings.sweep_batch_size)
    report = await engine.sweep(batch)
    return SweepResponse(limit=batch, report=report)


@router.get("/sync/{record_type}/{record_id}", response_model=SyncStateResponse)
async def get_sync_state(
    record_type: str,
    record_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> SyncStateResponse:
    resolved_type = resolve_record_type(record_type)
    record_uuid = parse_uuid(record_id, "record_id")
    record = await engine.get_record(resolved_type, record_uuid)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resolved_type.capitalize()} '{record_uuid}' not found",
        )
    return SyncStateResponse(
        record_type=resolved_type,
        record_id=record.id,
        sync_status=record.sync_status,
        external_id=record.external_id,
        sync_error=record.sync_error,
        last_sync_attempt_at=record.last_sync_attempt_at,
        synced_at=record.synced_at,
    )


@router.post("/sync/{record_type}/{record_id}/reset", response_model=ResetResponse)
async def reset_failed(
    record_type: str,
    record_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> ResetResponse:
    resolved_type = resolve_record_type(record_type)
    record_uuid = parse_uuid(record_id, "record_id")
    if await engine.get_record(resolved_type, record_uuid) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resolved_type.capitalize()} '{record_uuid}' not found",
        )
    reset = await engine.reset_failed(resolved_type, record_uuid)
    return ResetResponse(record_type=resolved_type, record_id=record_uuid, reset=reset)


@router.post("/payouts/{payout_id}/payments/{payment_id}", response_model=LinkResponse)
async def link_payment(
    payout_id: str,
    payment_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> LinkResponse:
    payout_uuid = parse_uuid(payout_id, "payout_id")
    payment_uuid = parse_uuid(payment_id, "payment_id")
    try:
        created = await engine.link_payment_to_payout(payout_uuid, payment_uuid)
    except LinkConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    logger.info(
        "payout_link_added",
        extra={"payout_id": payout_id, "payment_id": payment_id, "created": created},
    )
    return LinkResponse(payout_id=payout_uuid, record_type="payment", record_id=payment_uuid, created=created)


@router.post("/payouts/{payout_id}/refunds/{refund_id}", response_model=LinkResponse)
async def link_refund(
    payout_id: str,
    refund_id: str,
    engine: LedgerSyncEngine = Depends(get_sync_engine),
) -> LinkResponse:
    payout_uuid = parse_uuid(payout_id, "payout_id")
    refund_uuid = parse_uuid(refund_id, "refund_id")
    try:
        created = await engine.link_refund_to_payout(payout_uuid, refund_uuid)
    except LinkConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    logger.info(
        "payout_link_added",
        extra={"payout_id": payout_id, "refund_id": refund_id, "created": created},
    )
    return LinkResponse(payout_id=payout_uuid, record_type="refund", record_id=refund_uuid, created=created)
