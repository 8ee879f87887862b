from __future__ import annotations

import uuid
from typing import Optional

from fastapi import HTTPException, status


_RECORD_TYPE_ALIASES = {
    "payment": "payment",
    "payments": "payment",
    "refund": "refund",
    "refunds": "refund",
    "payout": "payout",
    "payouts": "payout",
}


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc


def resolve_record_type(value: str) -> str:
    resolved = _RECORD_TYPE_ALIASES.get(value.lower())
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown record type '{value}'",
        )
    return resolved


def normalize_limit(value: Optional[int], *, default: int, limit: int = 10000) -> int:
    if value is None:
        return default
    if value < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="limit must be >= 1",
        )
    if value > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"limit cannot exceed {limit}",
        )
    return value
