"""Payment link database models.

This DB is the source of truth for link state, the transactions observed for
each link, the transition audit trail, the anomaly log and the local outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, validates

from paylink.common.db import Base, JSONType, utcnow


class PaymentLink(Base):
    """Current state of a payment link aggregate."""

    __tablename__ = "payment_links"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String(16), index=True)
    provider_config_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True, default="pending")
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_reference_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    link_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    link_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    @validates("provider_reference_id")
    def _reference_is_write_once(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise ValueError("provider_reference_id cannot change once set")
        return value


class Transaction(Base):
    """One provider settlement event observed for a link."""

    __tablename__ = "transactions"
    # Idempotency key for at-least-once webhook delivery.
    __table_args__ = (
        UniqueConstraint("payment_link_id", "provider_transaction_id", name="uq_transaction_provider_txn"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_link_id: Mapped[str] = mapped_column(ForeignKey("payment_links.id"), index=True)
    provider_transaction_id: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(16), index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    txn_metadata: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class PaymentLinkTimeline(Base):
    """Immutable audit trail of every link status change."""

    __tablename__ = "payment_link_timeline"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_link_id: Mapped[str] = mapped_column(ForeignKey("payment_links.id"), index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    reason: Mapped[str] = mapped_column(String)
    provider_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class ReconciliationAnomaly(Base):
    """Provider events kept for manual review: orphans and conflicting outcomes."""

    __tablename__ = "reconciliation_anomalies"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    kind: Mapped[str] = mapped_column(String(32), index=True)
    provider: Mapped[str] = mapped_column(String(16))
    payment_link_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_reference_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    detail: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Domain events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
