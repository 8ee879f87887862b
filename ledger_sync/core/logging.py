from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger.json import JsonFormatter


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
record_type_ctx: ContextVar[Optional[str]] = ContextVar("record_type", default=None)
record_id_ctx: ContextVar[Optional[str]] = ContextVar("record_id", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)


class SyncContextFilter(logging.Filter):
    """Injects request and sync-attempt context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Values passed explicitly through ``extra`` take precedence.
        for attr, ctx in (
            ("request_id", request_id_ctx),
            ("record_type", record_type_ctx),
            ("record_id", record_id_ctx),
            ("realm_id", realm_id_ctx),
        ):
            if getattr(record, attr, None) is None:
                setattr(record, attr, ctx.get())
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "sync_context": {
                    "()": SyncContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["sync_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    realm_id: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if realm_id is not None:
        realm_id_ctx.set(realm_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    realm_id_ctx.set(None)


def set_sync_context(record_type: str, record_id: Any) -> None:
    record_type_ctx.set(record_type)
    record_id_ctx.set(str(record_id))


def clear_sync_context() -> None:
    record_type_ctx.set(None)
    record_id_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets and contact details while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "secret",
        "password",
        "primaryemailaddr",
        "primaryphone",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def log_sync_started(
    *,
    record_type: str,
    record_id: Any,
    doc_type: Optional[str],
    payload: Any = None,
) -> None:
    logger = logging.getLogger("ledger_sync.sync")
    logger.info(
        "sync_attempt_started",
        extra={
            "event": "sync_attempt_started",
            "record_type": record_type,
            "record_id": str(record_id),
            "doc_type": doc_type,
            "payload": sanitize_payload(payload),
        },
    )


def log_sync_finished(
    *,
    record_type: str,
    record_id: Any,
    result: str,
    external_id: Optional[str] = None,
    latency_ms: Optional[float] = None,
    error_code: Optional[str] = None,
    error_reason: Optional[str] = None,
    error_message: Optional[str] = None,
    reused: bool = False,
) -> None:
    logger = logging.getLogger("ledger_sync.sync")
    level = logging.INFO if result in ("success", "not_ready") else logging.WARNING
    logger.log(
        level,
        "sync_attempt_finished",
        extra={
            "event": "sync_attempt_finished",
            "record_type": record_type,
            "record_id": str(record_id),
            "result": result,
            "external_id": external_id,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "error_code": error_code,
            "error_reason": error_reason,
            "error_message": error_message,
            "reused": reused,
        },
    )
