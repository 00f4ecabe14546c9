"""API request/response schemas for payment link endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paylink.providers.base import Provider


class CreatePaymentLinkRequest(BaseModel):
    """Payload accepted by `POST /payment-links`."""

    provider_config_id: str | None = None
    provider: Provider | None = None
    amount: int = Field(gt=0, description="Minor currency units")
    currency: str = Field(min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=500)
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class PaymentLinkView(BaseModel):
    """Read model exposed to UI collaborators."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int
    currency: str
    status: str
    provider: str
    link_url: str | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_transaction_id: str
    amount: int
    currency: str
    status: str
    paid_at: datetime | None = None


class OwnerTransactionView(TransactionView):
    payment_link_id: str
    provider: str | None = None
    created_at: datetime | None = None


class TimelineEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None
    to_status: str
    reason: str
    provider_transaction_id: str | None = None
    created_at: datetime | None = None


class PaymentLinkDetail(PaymentLinkView):
    description: str | None = None
    created_at: datetime | None = None
    transactions: list[TransactionView] = Field(default_factory=list)
    timeline: list[TimelineEntryView] = Field(default_factory=list)
