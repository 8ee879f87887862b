from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


class SyncError(Exception):
    """Base class for failures raised while syncing a single ledger record."""

    code = "sync_error"
    default_reason = "unknown"

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "reason": self.reason,
            "message": self.message,
            "details": self.details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ConfigurationMissing(SyncError):
    code = "configuration_missing"
    default_reason = "mapping_not_configured"


class ResolutionFailed(SyncError):
    code = "resolution_failed"
    default_reason = "lookup_failed"


class ExternalApiError(SyncError):
    code = "external_api_error"
    default_reason = "request_failed"


class DependencyNotReady(SyncError):
    code = "dependency_not_ready"
    default_reason = "transactions_not_fully_synced"


class InvalidRecord(SyncError):
    code = "invalid_record"
    default_reason = "record_not_reportable"


class RecordNotFound(SyncError):
    code = "not_found"
    default_reason = "record_not_found"
