"""Initial ledger and sync schema

Revision ID: 20241101_0001
Revises: 
Create Date: 2025-11-01 09:30:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20241101_0001"
down_revision = None
branch_labels = None
depends_on = None


sync_status_enum = sa.Enum(
    "pending",
    "synced",
    "failed",
    name="sync_status_enum",
    native_enum=False,
)

environment_enum = sa.Enum(
    "sandbox",
    "prod",
    name="environment_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _sync_columns() -> list[sa.Column]:
    return [
        sa.Column("sync_status", sync_status_enum, nullable=False, server_default="pending"),
        sa.Column("external_id", sa.String(length=64), nullable=True),
        sa.Column("external_response", sa.JSON(), nullable=True),
        sa.Column("sync_error", sa.JSON(), nullable=True),
        sa.Column("last_sync_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    sync_status_enum.create(op.get_bind(), checkfirst=True)
    environment_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", guid, nullable=False),
        sa.Column("first_name", sa.String(length=255), nullable=True),
        sa.Column("last_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone_number", sa.String(length=64), nullable=True),
        sa.Column("qbo_customer_id", sa.String(length=64), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "payments",
        sa.Column("id", guid, nullable=False),
        sa.Column("user_id", guid, nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=False),
        sa.Column("external_payment_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("property", sa.String(length=32), nullable=True),
        sa.Column("payment_date", sa.Date(), nullable=True),
        *_sync_columns(),
        _created_at(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_sync_status", "payments", ["sync_status"])
    op.create_index("ix_payments_external_id", "payments", ["external_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", guid, nullable=False),
        sa.Column("payment_id", guid, nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("property", sa.String(length=32), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ledger_entries_payment_id", "ledger_entries", ["payment_id"])

    op.create_table(
        "refunds",
        sa.Column("id", guid, nullable=False),
        sa.Column("payment_id", guid, nullable=False),
        sa.Column("reference_id", sa.String(length=64), nullable=False),
        sa.Column("external_refund_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("property", sa.String(length=32), nullable=True),
        sa.Column("refund_date", sa.Date(), nullable=True),
        *_sync_columns(),
        _created_at(),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_refunds_sync_status", "refunds", ["sync_status"])
    op.create_index("ix_refunds_external_id", "refunds", ["external_id"])
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])

    op.create_table(
        "payouts",
        sa.Column("id", guid, nullable=False),
        sa.Column("external_payout_id", sa.String(length=255), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("fee_total_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("arrival_date", sa.Date(), nullable=True),
        *_sync_columns(),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payouts_sync_status", "payouts", ["sync_status"])
    op.create_index("ix_payouts_external_id", "payouts", ["external_id"])

    op.create_table(
        "payout_payments",
        sa.Column("payout_id", guid, nullable=False),
        sa.Column("payment_id", guid, nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["payout_id"], ["payouts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.UniqueConstraint("payment_id", name="uq_payout_payments_payment"),
    )
    op.create_index("ix_payout_payments_payout_id", "payout_payments", ["payout_id"])

    op.create_table(
        "payout_refunds",
        sa.Column("payout_id", guid, nullable=False),
        sa.Column("refund_id", guid, nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["payout_id"], ["payouts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["refund_id"], ["refunds.id"]),
        sa.UniqueConstraint("refund_id", name="uq_payout_refunds_refund"),
    )
    op.create_index("ix_payout_refunds_payout_id", "payout_refunds", ["payout_id"])

    op.create_table(
        "quickbooks_connections",
        sa.Column("id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("environment", environment_enum, nullable=False, server_default="sandbox"),
        sa.Column("refresh_token_enc", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=True),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("realm_id", "environment", name="uq_realm_environment"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", guid, nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("event_key", sa.String(length=255), nullable=False),
        sa.Column("entity_name", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=True),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key", name="uq_webhook_event_key"),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_table("quickbooks_connections")
    op.drop_index("ix_payout_refunds_payout_id", table_name="payout_refunds")
    op.drop_table("payout_refunds")
    op.drop_index("ix_payout_payments_payout_id", table_name="payout_payments")
    op.drop_table("payout_payments")
    op.drop_index("ix_payouts_external_id", table_name="payouts")
    op.drop_index("ix_payouts_sync_status", table_name="payouts")
    op.drop_table("payouts")
    op.drop_index("ix_refunds_payment_id", table_name="refunds")
    op.drop_index("ix_refunds_external_id", table_name="refunds")
    op.drop_index("ix_refunds_sync_status", table_name="refunds")
    op.drop_table("refunds")
    op.drop_index("ix_ledger_entries_payment_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_payments_external_id", table_name="payments")
    op.drop_index("ix_payments_sync_status", table_name="payments")
    op.drop_table("payments")
    op.drop_table("users")
    environment_enum.drop(op.get_bind(), checkfirst=True)
    sync_status_enum.drop(op.get_bind(), checkfirst=True)
