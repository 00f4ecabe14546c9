"""initial paylink schema

Revision ID: 0001_paylink
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_paylink"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "provider_configs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("encrypted_credentials", sa.Text(), nullable=False),
        sa.Column("is_test_mode", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "provider", "display_name", name="uq_provider_config_name"),
    )
    op.create_index("ix_provider_configs_owner_id", "provider_configs", ["owner_id"])
    op.create_index("ix_provider_configs_provider", "provider_configs", ["provider"])
    op.create_index("ix_provider_configs_is_active", "provider_configs", ["is_active"])

    op.create_table(
        "payment_links",
        sa.Column("id", sa.String(length=40), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("provider_config_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_reference_id", sa.String(), nullable=True),
        sa.Column("link_url", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount > 0", name="ck_payment_links_amount_positive"),
        sa.CheckConstraint(
            "(status = 'succeeded') = (completed_at IS NOT NULL)",
            name="ck_payment_links_completed_at",
        ),
    )
    op.create_index("ix_payment_links_owner_id", "payment_links", ["owner_id"])
    op.create_index("ix_payment_links_provider", "payment_links", ["provider"])
    op.create_index("ix_payment_links_provider_config_id", "payment_links", ["provider_config_id"])
    op.create_index("ix_payment_links_status", "payment_links", ["status"])
    op.create_index("ix_payment_links_expires_at", "payment_links", ["expires_at"])
    op.create_index("ix_payment_links_provider_reference_id", "payment_links", ["provider_reference_id"])
    op.create_index("ix_payment_links_owner_id_created_at", "payment_links", ["owner_id", "created_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_link_id", sa.String(length=40), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_link_id"], ["payment_links.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_link_id", "provider_transaction_id", name="uq_transaction_provider_txn"),
    )
    op.create_index("ix_transactions_payment_link_id", "transactions", ["payment_link_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])

    op.create_table(
        "payment_link_timeline",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("payment_link_id", sa.String(length=40), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=True),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["payment_link_id"], ["payment_links.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_link_timeline_payment_link_id", "payment_link_timeline", ["payment_link_id"])

    op.create_table(
        "reconciliation_anomalies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(length=16), nullable=False),
        sa.Column("payment_link_id", sa.String(), nullable=True),
        sa.Column("provider_reference_id", sa.String(), nullable=True),
        sa.Column("provider_transaction_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("detail", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reconciliation_anomalies_kind", "reconciliation_anomalies", ["kind"])
    op.create_index("ix_reconciliation_anomalies_payment_link_id", "reconciliation_anomalies", ["payment_link_id"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status_created_at", "outbox_events", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_reconciliation_anomalies_payment_link_id", table_name="reconciliation_anomalies")
    op.drop_index("ix_reconciliation_anomalies_kind", table_name="reconciliation_anomalies")
    op.drop_table("reconciliation_anomalies")
    op.drop_index("ix_payment_link_timeline_payment_link_id", table_name="payment_link_timeline")
    op.drop_table("payment_link_timeline")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_payment_link_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_payment_links_owner_id_created_at", table_name="payment_links")
    op.drop_index("ix_payment_links_provider_reference_id", table_name="payment_links")
    op.drop_index("ix_payment_links_expires_at", table_name="payment_links")
    op.drop_index("ix_payment_links_status", table_name="payment_links")
    op.drop_index("ix_payment_links_provider_config_id", table_name="payment_links")
    op.drop_index("ix_payment_links_provider", table_name="payment_links")
    op.drop_index("ix_payment_links_owner_id", table_name="payment_links")
    op.drop_table("payment_links")
    op.drop_index("ix_provider_configs_is_active", table_name="provider_configs")
    op.drop_index("ix_provider_configs_provider", table_name="provider_configs")
    op.drop_index("ix_provider_configs_owner_id", table_name="provider_configs")
    op.drop_table("provider_configs")
