"""Outbound domain events, written to the outbox inside the state-change transaction."""

from paylink.common.events import EventEnvelope
from paylink.common.logging import trace_id_ctx
from paylink.services.links.models import OutboxEvent, PaymentLink

LINK_CREATED = "payment_links.created"

TERMINAL_TOPICS = {
    "succeeded": "payment_links.succeeded",
    "failed": "payment_links.failed",
    "cancelled": "payment_links.cancelled",
    "expired": "payment_links.expired",
}


def link_payload(link: PaymentLink) -> dict:
    return {
        "owner_id": link.owner_id,
        "provider": link.provider,
        "amount": link.amount,
        "currency": link.currency,
        "status": link.status,
        "completed_at": link.completed_at.isoformat() if link.completed_at else None,
    }


def outbox_event(topic: str, link: PaymentLink, **extra) -> OutboxEvent:
    envelope = EventEnvelope(
        event_type=topic,
        aggregate_id=link.id,
        trace_id=trace_id_ctx.get() or link.id,
        payload={**link_payload(link), **extra},
    )
    return OutboxEvent(
        aggregate_type="payment_link",
        aggregate_id=link.id,
        event_type=topic,
        topic=topic,
        payload=envelope.model_dump(),
    )


def link_created(link: PaymentLink) -> OutboxEvent:
    return outbox_event(LINK_CREATED, link, link_url=link.link_url)


def link_terminal(link: PaymentLink, provider_transaction_id: str | None) -> OutboxEvent:
    return outbox_event(TERMINAL_TOPICS[link.status], link, provider_transaction_id=provider_transaction_id)
