from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Table,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class SyncStatus(str):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


sync_status_enum = Enum(
    SyncStatus.PENDING,
    SyncStatus.SYNCED,
    SyncStatus.FAILED,
    name="sync_status_enum",
    native_enum=False,
)


class SyncFields:
    """Columns written exclusively by the sync state machine."""

    sync_status: Mapped[str] = mapped_column(
        sync_status_enum,
        default=SyncStatus.PENDING,
        nullable=False,
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_response: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    sync_error: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
    )
    last_sync_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


payout_payments = Table(
    "payout_payments",
    Base.metadata,
    Column("payout_id", GUID(), ForeignKey("payouts.id", ondelete="CASCADE"), nullable=False),
    Column("payment_id", GUID(), ForeignKey("payments.id"), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint("payment_id", name="uq_payout_payments_payment"),
    Index("ix_payout_payments_payout_id", "payout_id"),
)


payout_refunds = Table(
    "payout_refunds",
    Base.metadata,
    Column("payout_id", GUID(), ForeignKey("payouts.id", ondelete="CASCADE"), nullable=False),
    Column("refund_id", GUID(), ForeignKey("refunds.id"), nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint("refund_id", name="uq_payout_refunds_refund"),
    Index("ix_payout_refunds_payout_id", "payout_id"),
)


class Users(Base):
    __tablename__ = "users"

    first_name: Mapped[Optional[str]] = mapped_column(String(255))
    last_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(320))
    phone_number: Mapped[Optional[str]] = mapped_column(String(64))
    qbo_customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def display_name(self) -> Optional[str]:
        parts = [part.strip() for part in (self.first_name, self.last_name) if part and part.strip()]
        if not parts:
            return None
        return " ".join(parts)


class Payments(SyncFields, Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_sync_status", "sync_status"),
        Index("ix_payments_external_id", "external_id"),
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("users.id"),
        nullable=True,
    )
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_payment_id: Mapped[Optional[str]] = mapped_column(String(255))
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(32))
    property: Mapped[Optional[str]] = mapped_column(String(32))
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    entries: Mapped[list["LedgerEntries"]] = relationship(
        back_populates="payment",
        order_by="LedgerEntries.created_at",
    )


class LedgerEntries(Base):
    """Revenue sub-component of a payment (tickets, donation, booking nights)."""

    __tablename__ = "ledger_entries"
    __table_args__ = (Index("ix_ledger_entries_payment_id", "payment_id"),)

    payment_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("payments.id"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    property: Mapped[Optional[str]] = mapped_column(String(32))
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    payment: Mapped["Payments"] = relationship(back_populates="entries")


class Refunds(SyncFields, Base):
    __tablename__ = "refunds"
    __table_args__ = (
        Index("ix_refunds_sync_status", "sync_status"),
        Index("ix_refunds_external_id", "external_id"),
        Index("ix_refunds_payment_id", "payment_id"),
    )

    payment_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("payments.id"),
        nullable=False,
    )
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_refund_id: Mapped[Optional[str]] = mapped_column(String(255))
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(32))
    property: Mapped[Optional[str]] = mapped_column(String(32))
    refund_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Payouts(SyncFields, Base):
    __tablename__ = "payouts"
    __table_args__ = (
        Index("ix_payouts_sync_status", "sync_status"),
        Index("ix_payouts_external_id", "external_id"),
    )

    external_payout_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_total_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    arrival_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    payments: Mapped[list["Payments"]] = relationship(
        secondary=payout_payments,
        order_by="Payments.created_at",
    )
    refunds: Mapped[list["Refunds"]] = relationship(
        secondary=payout_refunds,
        order_by="Refunds.created_at",
    )


class QuickBooksConnections(Base):
    __tablename__ = "quickbooks_connections"
    __table_args__ = (
        UniqueConstraint("realm_id", "environment", name="uq_realm_environment"),
    )

    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    environment: Mapped[str] = mapped_column(
        Enum("sandbox", "prod", name="environment_enum", native_enum=False),
        default="sandbox",
        nullable=False,
    )
    refresh_token_enc: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    access_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    refresh_counter: Mapped[int] = mapped_column(default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class WebhookEvents(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("event_key", name="uq_webhook_event_key"),)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_key: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    realm_id: Mapped[Optional[str]] = mapped_column(String(64))
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    outcome: Mapped[Optional[str]] = mapped_column(String(32))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
