from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger_sync.services.money import format_amount
from ledger_sync.services.sync import SyncFailure, SyncResult


class SyncErrorResponse(BaseModel):
    code: str
    reason: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None

    @classmethod
    def from_failure(cls, failure: Optional[SyncFailure]) -> Optional["SyncErrorResponse"]:
        if failure is None:
            return None
        return cls(**failure.to_payload())


class ExternalDocumentResponse(BaseModel):
    id: str
    doc_type: str
    total_amt: Optional[str] = None
    sync_token: Optional[str] = None


class SyncResultResponse(BaseModel):
    record_type: str
    record_id: UUID
    status: str
    external_id: Optional[str] = None
    document: Optional[ExternalDocumentResponse] = None
    error: Optional[SyncErrorResponse] = None
    reused: bool = False
    cascaded: list["SyncResultResponse"] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultResponse":
        document = None
        if result.document is not None:
            document = ExternalDocumentResponse(
                id=result.document.id,
                doc_type=result.document.doc_type,
                total_amt=(
                    None if result.document.total_amt is None else format_amount(result.document.total_amt)
                ),
                sync_token=result.document.sync_token,
            )
        return cls(
            record_type=result.record_type,
            record_id=result.record_id,
            status=result.status,
            external_id=result.external_id,
            document=document,
            error=SyncErrorResponse.from_failure(result.error),
            reused=result.reused,
            cascaded=[cls.from_result(item) for item in result.cascaded],
        )


class SyncStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_type: str
    record_id: UUID
    sync_status: str
    external_id: Optional[str] = None
    sync_error: Optional[dict[str, Any]] = None
    last_sync_attempt_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None


class ResetResponse(BaseModel):
    record_type: str
    record_id: UUID
    reset: bool


class SweepResponse(BaseModel):
    limit: int
    report: dict[str, dict[str, int]]


class LinkResponse(BaseModel):
    payout_id: UUID
    record_type: str
    record_id: UUID
    created: bool


class WebhookEntity(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    id: str
    operation: str
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")


class DataChangeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entities: list[WebhookEntity] = Field(default_factory=list)


class EventNotification(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    realm_id: Optional[str] = Field(default=None, alias="realmId")
    data_change_event: DataChangeEvent = Field(default_factory=DataChangeEvent, alias="dataChangeEvent")


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_notifications: list[EventNotification] = Field(
        default_factory=list, alias="eventNotifications"
    )


class WebhookAck(BaseModel):
    accepted: int
    duplicates: int
    skipped: int
