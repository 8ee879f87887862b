from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.core.logging import clear_sync_context, log_sync_finished, log_sync_started, set_sync_context
from ledger_sync.db import repo
from ledger_sync.db.models import Payments, Payouts, Refunds, SyncStatus
from ledger_sync.schemas.documents import CustomerParams, EmailAddress, ExternalDocument, PhoneNumber, Ref
from ledger_sync.services.builder import DocumentBuilder
from ledger_sync.services.errors import (
    DependencyNotReady,
    ExternalApiError,
    RecordNotFound,
    ResolutionFailed,
    SyncError,
)
from ledger_sync.services.payouts import PayoutAggregator, ensure_links_synced
from ledger_sync.services.qbo_client import AccountingClient, QuickBooksApiError, QuickBooksOAuthError

logger = logging.getLogger("ledger_sync.sync")

DOC_TYPES: dict[str, str] = {
    "payment": "SalesReceipt",
    "refund": "RefundReceipt",
    "payout": "Deposit",
}

NOT_FOUND = "not_found"

SYNC_EXCEPTIONS = (SyncError, QuickBooksApiError, QuickBooksOAuthError, httpx.HTTPError)

DocumentFactory = Callable[[AsyncSession, Any], Awaitable[ExternalDocument]]


@dataclass
class SyncFailure:
    code: str
    reason: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    @classmethod
    def from_error(cls, error: SyncError) -> "SyncFailure":
        payload = error.to_payload()
        return cls(**payload)

    @classmethod
    def from_stored(cls, payload: Optional[dict[str, Any]]) -> Optional["SyncFailure"]:
        if not payload:
            return None
        return cls(
            code=str(payload.get("code", "unknown")),
            reason=str(payload.get("reason", "unknown")),
            message=str(payload.get("message", "")),
            details=payload.get("details") or {},
            timestamp=payload.get("timestamp"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "reason": self.reason,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


@dataclass
class SyncResult:
    record_type: str
    record_id: uuid.UUID
    status: str
    document: Optional[ExternalDocument] = None
    error: Optional[SyncFailure] = None
    reused: bool = False
    cascaded: list["SyncResult"] = field(default_factory=list)

    @property
    def synced(self) -> bool:
        return self.status == SyncStatus.SYNCED

    @property
    def external_id(self) -> Optional[str]:
        return None if self.document is None else self.document.id


def _truncate(body: Optional[str], limit: int = 2000) -> Optional[str]:
    if body is None or len(body) <= limit:
        return body
    return body[:limit] + "..."


def to_sync_error(exc: BaseException) -> SyncError:
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, QuickBooksApiError):
        http_failure = exc.status_code is not None and exc.status_code >= 400
        return ExternalApiError(
            str(exc),
            reason="http_status" if http_failure else "invalid_response",
            details={"status_code": exc.status_code, "body": _truncate(exc.body)},
        )
    if isinstance(exc, QuickBooksOAuthError):
        return ExternalApiError(str(exc), reason="oauth_failed")
    if isinstance(exc, httpx.TimeoutException):
        return ExternalApiError(str(exc) or "Request timed out", reason="timeout")
    return ExternalApiError(str(exc) or type(exc).__name__, reason="transport_error")


class SyncStateMachine:
    """Drives one ledger record from pending/failed to synced.

    Every attempt re-reads the record; the success, failure and customer-id
    writes are conditional so concurrent attempts never overwrite a synced
    record or each other's customer.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: AccountingClient,
        builder: DocumentBuilder,
        aggregator: PayoutAggregator,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.builder = builder
        self.aggregator = aggregator

    async def sync_payment(self, payment_id: uuid.UUID) -> SyncResult:
        return await self._run("payment", payment_id, self._create_sales_receipt)

    async def sync_refund(self, refund_id: uuid.UUID) -> SyncResult:
        return await self._run("refund", refund_id, self._create_refund_receipt)

    async def sync_payout(self, payout_id: uuid.UUID) -> SyncResult:
        return await self._run("payout", payout_id, self._create_deposit)

    async def _run(
        self,
        record_type: str,
        record_id: uuid.UUID,
        create_document: DocumentFactory,
    ) -> SyncResult:
        model = repo.RECORD_MODELS[record_type]
        doc_type = DOC_TYPES[record_type]
        set_sync_context(record_type, record_id)
        start = perf_counter()
        try:
            async with self.session_factory() as session:
                record = await repo.get_record(session, model, record_id)
                if record is None:
                    error = RecordNotFound(f"{record_type} {record_id} does not exist")
                    log_sync_finished(
                        record_type=record_type,
                        record_id=record_id,
                        result=NOT_FOUND,
                        error_code=error.code,
                    )
                    return SyncResult(
                        record_type=record_type,
                        record_id=record_id,
                        status=NOT_FOUND,
                        error=SyncFailure.from_error(error),
                    )
                if record.sync_status == SyncStatus.SYNCED:
                    return self._reused(record_type, record, doc_type)
                await session.commit()

                try:
                    document = await create_document(session, record)
                except SYNC_EXCEPTIONS as exc:
                    return await self._fail(session, record_type, model, record_id, doc_type, exc, start)

                won = await repo.mark_synced(
                    session,
                    model,
                    record_id,
                    external_id=document.id,
                    response=document.raw,
                )
                if not won:
                    stored = await repo.get_record(session, model, record_id)
                    logger.warning(
                        "sync_race_lost",
                        extra={
                            "discarded_external_id": document.id,
                            "external_id": None if stored is None else stored.external_id,
                        },
                    )
                    return self._reused(record_type, stored, doc_type)

                log_sync_finished(
                    record_type=record_type,
                    record_id=record_id,
                    result="success",
                    external_id=document.id,
                    latency_ms=(perf_counter() - start) * 1000,
                )
                return SyncResult(
                    record_type=record_type,
                    record_id=record_id,
                    status=SyncStatus.SYNCED,
                    document=document,
                )
        finally:
            clear_sync_context()

    async def _fail(
        self,
        session: AsyncSession,
        record_type: str,
        model,
        record_id: uuid.UUID,
        doc_type: str,
        exc: BaseException,
        start: float,
    ) -> SyncResult:
        error = to_sync_error(exc)
        failure = SyncFailure.from_error(error)
        marked = await repo.mark_failed(session, model, record_id, error=failure.to_payload())
        if not marked:
            # A concurrent attempt synced the record while this one was failing.
            stored = await repo.get_record(session, model, record_id)
            if stored is not None and stored.sync_status == SyncStatus.SYNCED:
                return self._reused(record_type, stored, doc_type)
        log_sync_finished(
            record_type=record_type,
            record_id=record_id,
            result="not_ready" if isinstance(error, DependencyNotReady) else "failure",
            latency_ms=(perf_counter() - start) * 1000,
            error_code=error.code,
            error_reason=error.reason,
            error_message=error.message,
        )
        return SyncResult(
            record_type=record_type,
            record_id=record_id,
            status=SyncStatus.FAILED,
            error=failure,
        )

    def _reused(self, record_type: str, record, doc_type: str) -> SyncResult:
        log_sync_finished(
            record_type=record_type,
            record_id=record.id,
            result="success",
            external_id=record.external_id,
            reused=True,
        )
        return SyncResult(
            record_type=record_type,
            record_id=record.id,
            status=SyncStatus.SYNCED,
            document=ExternalDocument.from_stored(doc_type, record.external_id, record.external_response),
            reused=True,
        )

    async def _create_sales_receipt(self, session: AsyncSession, payment: Payments) -> ExternalDocument:
        entries = await repo.list_ledger_entries(session, payment.id)
        await session.commit()
        params = await self.builder.build_sales_receipt(
            payment,
            entries,
            lambda: self.ensure_customer(session, payment.user_id),
        )
        log_sync_started(
            record_type="payment",
            record_id=payment.id,
            doc_type="SalesReceipt",
            payload=params.to_payload(),
        )
        return await self.client.create_sales_receipt(params)

    async def _create_refund_receipt(self, session: AsyncSession, refund: Refunds) -> ExternalDocument:
        payment = await repo.get_record(session, Payments, refund.payment_id)
        if payment is None:
            raise ResolutionFailed(
                f"Origin payment {refund.payment_id} does not exist",
                reason="origin_payment_not_found",
            )
        entries = await repo.list_ledger_entries(session, payment.id)
        await session.commit()
        params = await self.builder.build_refund_receipt(
            refund,
            payment,
            lambda: self.ensure_customer(session, payment.user_id),
            entries,
        )
        log_sync_started(
            record_type="refund",
            record_id=refund.id,
            doc_type="RefundReceipt",
            payload=params.to_payload(),
        )
        return await self.client.create_refund_receipt(params)

    async def _create_deposit(self, session: AsyncSession, payout: Payouts) -> ExternalDocument:
        payout = await repo.get_payout_with_links(session, payout.id)
        await session.commit()
        ensure_links_synced(payout)
        params = await self.aggregator.build_deposit(payout)
        log_sync_started(
            record_type="payout",
            record_id=payout.id,
            doc_type="Deposit",
            payload=params.to_payload(),
        )
        return await self.client.create_deposit(params)

    async def ensure_customer(self, session: AsyncSession, user_id: Optional[uuid.UUID]) -> Ref:
        if user_id is None:
            raise ResolutionFailed("Record has no owning user", reason="user_missing")
        user = await repo.get_user(session, user_id)
        if user is None:
            raise ResolutionFailed(f"User {user_id} does not exist", reason="user_not_found")
        if user.qbo_customer_id:
            return Ref(value=user.qbo_customer_id, name=user.display_name)
        display_name = user.display_name
        if not display_name:
            raise ResolutionFailed(
                "User has no first or last name to build a customer display name",
                reason="customer_name_missing",
                details={"user_id": str(user_id)},
            )
        try:
            params = CustomerParams(
                display_name=display_name,
                given_name=user.first_name,
                family_name=user.last_name,
                email=EmailAddress(address=user.email) if user.email else None,
                phone=PhoneNumber(free_form_number=user.phone_number) if user.phone_number else None,
            )
        except ValidationError as exc:
            raise ResolutionFailed(
                "User details cannot form a customer",
                reason="customer_invalid",
                details={"errors": [error["msg"] for error in exc.errors()]},
            ) from exc
        await session.commit()
        created_id = await self.client.create_customer(params)
        stored_id = await repo.claim_customer_id(session, user_id=user_id, customer_id=created_id)
        if stored_id != created_id:
            logger.warning(
                "customer_orphaned",
                extra={"user_id": str(user_id), "orphan_customer_id": created_id, "customer_id": stored_id},
            )
        else:
            logger.info("customer_created", extra={"user_id": str(user_id), "customer_id": created_id})
        return Ref(value=stored_id, name=display_name)
