"""Reconciliation engine.

Every status change of a payment link, whatever triggered it (webhook, client
poll, expiry, owner cancel), is a `ProviderEvent` fed through
`apply_provider_event`. Idempotency rests on the unique
`(payment_link_id, provider_transaction_id)` constraint and ordering on the
store's compare-and-set transition.
"""

from datetime import timedelta
from enum import Enum

from paylink.common.db import as_utc, utcnow
from paylink.common.errors import InvalidTransition, ProviderRejected, ProviderUnavailable
from paylink.common.logging import logger, payment_link_id_ctx
from paylink.common.metrics import (
    duplicate_events_skipped_total,
    link_e2e_seconds,
    link_transitions_total,
    orphan_events_total,
    reconciliation_anomalies_total,
)
from paylink.common.state_machine import PENDING
from paylink.common.tracing import tracer
from paylink.providers.base import CanonicalStatus, ProviderEvent
from paylink.providers.registry import ADAPTERS, parse_provider
from paylink.services.links.models import PaymentLink, Transaction
from paylink.services.links.store import PaymentLinkStore


class Outcome(str, Enum):
    APPLIED = "applied"
    # Transaction stored, link left alone (already terminal, refund, or race lost).
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    ORPHAN = "orphan"
    IGNORED = "ignored"


def poll_grace_seconds(provider: str) -> int:
    return ADAPTERS[parse_provider(provider)].poll_grace_seconds


class ReconciliationEngine:
    def __init__(self, session_factory, store: PaymentLinkStore, adapter_resolver, service_name: str = "paylink"):
        """`adapter_resolver(link)` returns a credentialed adapter for the link, or None."""

        self.session_factory = session_factory
        self.store = store
        self.adapter_resolver = adapter_resolver
        self.service_name = service_name

    def apply_provider_event(self, event: ProviderEvent) -> Outcome:
        """Apply one canonical event exactly once."""

        with tracer.start_as_current_span("reconciliation.apply_provider_event") as span:
            span.set_attribute("paylink.provider", event.provider)
            span.set_attribute("paylink.event_type", event.event_type)
            outcome = self._apply(event)
            span.set_attribute("paylink.outcome", outcome.value)
            return outcome

    def _apply(self, event: ProviderEvent) -> Outcome:
        if event.canonical_status is CanonicalStatus.IGNORED:
            logger.info("provider event ignored provider=%s event_type=%s", event.provider, event.event_type)
            return Outcome.IGNORED

        with self.session_factory() as db:
            link = self.store.find_for_event(db, event.provider, event.provider_reference_id, event.link_reference)
            if link is None:
                self.store.record_anomaly(
                    db,
                    "orphan",
                    event.provider,
                    event.event_type,
                    provider_reference_id=event.provider_reference_id,
                    provider_transaction_id=event.provider_transaction_id,
                    detail={"link_reference": event.link_reference, "source": event.source},
                )
                db.commit()
                orphan_events_total.labels(service=self.service_name, provider=event.provider).inc()
                logger.warning(
                    "orphan provider event provider=%s event_type=%s provider_reference_id=%s",
                    event.provider,
                    event.event_type,
                    event.provider_reference_id,
                )
                return Outcome.ORPHAN

            payment_link_id_ctx.set(link.id)
            link_id = link.id
            txn_id = event.provider_transaction_id or (
                f"{event.provider_reference_id or link_id}:{event.canonical_status.value}"
            )
            recorded = self.store.record_transaction(
                db,
                Transaction(
                    payment_link_id=link_id,
                    provider_transaction_id=txn_id,
                    amount=event.amount if event.amount is not None else link.amount,
                    currency=(event.currency or link.currency).upper(),
                    status=event.canonical_status.transaction_status,
                    paid_at=utcnow() if event.canonical_status is CanonicalStatus.SUCCEEDED else None,
                    txn_metadata={"event_type": event.event_type, "source": event.source},
                ),
            )
            if not recorded:
                duplicate_events_skipped_total.labels(
                    service=self.service_name, provider=event.provider, source=event.source
                ).inc()
                logger.info(
                    "duplicate provider event skipped payment_link_id=%s provider_transaction_id=%s",
                    link_id,
                    txn_id,
                )
                return Outcome.DUPLICATE

            target = event.canonical_status.link_status
            if target is None:
                db.commit()
                logger.info("transaction recorded payment_link_id=%s status=%s", link_id, event.canonical_status.value)
                return Outcome.RECORDED

            if link.status != PENDING:
                self._conflict(db, link, target, event, txn_id)
                db.commit()
                return Outcome.RECORDED

            try:
                self.store.transition(
                    db, link, target, reason=f"{event.source}:{event.event_type}", provider_transaction_id=txn_id
                )
            except InvalidTransition as exc:
                if not exc.race_lost:
                    self._invalid_transition(db, link_id, target, event, txn_id, exc)
                    db.commit()
                    return Outcome.RECORDED
                # Another writer moved the link first; keep our transaction for audit.
                db.refresh(link)
                self._conflict(db, link, target, event, txn_id)
                db.commit()
                logger.info("transition race lost payment_link_id=%s target=%s", link_id, target)
                return Outcome.RECORDED
            db.commit()

        link_transitions_total.labels(
            service=self.service_name, provider=event.provider, to_status=target, source=event.source
        ).inc()
        created_at = as_utc(link.created_at)
        if created_at is not None:
            elapsed = max(0.0, (utcnow() - created_at).total_seconds())
            link_e2e_seconds.labels(service=self.service_name, terminal_status=target).observe(elapsed)
        logger.info(
            "payment link transitioned payment_link_id=%s to=%s source=%s event_type=%s",
            link_id,
            target,
            event.source,
            event.event_type,
        )
        return Outcome.APPLIED

    def _conflict(self, db, link: PaymentLink, target: str, event: ProviderEvent, txn_id: str) -> None:
        """Terminal link meets a different terminal outcome: first one stays, this one is logged."""

        if link.status == target:
            return
        self.store.record_anomaly(
            db,
            "conflicting_terminal",
            event.provider,
            event.event_type,
            payment_link_id=link.id,
            provider_reference_id=event.provider_reference_id,
            provider_transaction_id=txn_id,
            detail={"current_status": link.status, "event_status": target, "source": event.source},
        )
        reconciliation_anomalies_total.labels(service=self.service_name, kind="conflicting_terminal").inc()
        logger.warning(
            "conflicting terminal event payment_link_id=%s current=%s event=%s provider_transaction_id=%s",
            link.id,
            link.status,
            target,
            txn_id,
        )

    def _invalid_transition(self, db, link_id: str, target: str, event: ProviderEvent, txn_id: str, exc) -> None:
        self.store.record_anomaly(
            db,
            "invalid_transition",
            event.provider,
            event.event_type,
            payment_link_id=link_id,
            provider_reference_id=event.provider_reference_id,
            provider_transaction_id=txn_id,
            detail={"event_status": target, "error": exc.message, "source": event.source},
        )
        reconciliation_anomalies_total.labels(service=self.service_name, kind="invalid_transition").inc()
        logger.error("unexpected invalid transition payment_link_id=%s target=%s", link_id, target)

    def synthesized_event(self, link: PaymentLink, status: CanonicalStatus, source: str) -> ProviderEvent:
        """Event for a state change we decide ourselves (expiry, owner cancel)."""

        return ProviderEvent(
            provider=link.provider,
            event_type=f"{source}.{status.value}",
            canonical_status=status,
            provider_reference_id=link.provider_reference_id,
            link_reference=link.id,
            provider_transaction_id=f"{link.id}:{status.value}",
            amount=link.amount,
            currency=link.currency,
            source=source,
        )

    def reconcile_by_polling(self, link_id: str) -> PaymentLink | None:
        """Ask the provider for the outcome of a pending link and apply it."""

        link = self.store.get(link_id)
        if link is None or link.status != PENDING or not link.provider_reference_id:
            return link
        adapter = self.adapter_resolver(link)
        if adapter is None:
            logger.warning("no adapter available for polling payment_link_id=%s", link_id)
            return link
        snapshot = adapter.get_status(link.provider_reference_id, reference=link.id, metadata=link.link_metadata)
        if snapshot.canonical_status is CanonicalStatus.IGNORED:
            return link
        self.apply_provider_event(
            ProviderEvent(
                provider=link.provider,
                event_type=f"poll.{snapshot.canonical_status.value}",
                canonical_status=snapshot.canonical_status,
                provider_reference_id=link.provider_reference_id,
                link_reference=link.id,
                provider_transaction_id=snapshot.provider_transaction_id,
                amount=snapshot.amount,
                currency=snapshot.currency,
                source="poll",
            )
        )
        return self.store.get(link_id)

    def expire_link(self, link: PaymentLink) -> Outcome:
        return self.apply_provider_event(self.synthesized_event(link, CanonicalStatus.EXPIRED, "expiry"))

    def expire_overdue_links(self, limit: int = 100) -> int:
        """Expire pending links whose `expires_at` has passed. Returns how many moved."""

        applied = 0
        for link in self.store.list_overdue(limit=limit):
            if self.expire_link(link) is Outcome.APPLIED:
                applied += 1
        return applied

    def sweep_pending_links(self, limit: int = 100) -> dict[str, int]:
        """Poll providers for pending links past their grace window."""

        counts = {"polled": 0, "resolved": 0, "errors": 0}
        now = utcnow()
        for link in self.store.list_pending(limit=limit):
            created_at = as_utc(link.created_at) or now
            if now - created_at < timedelta(seconds=poll_grace_seconds(link.provider)):
                continue
            counts["polled"] += 1
            try:
                polled = self.reconcile_by_polling(link.id)
            except (ProviderUnavailable, ProviderRejected) as exc:
                counts["errors"] += 1
                logger.warning("sweep poll failed payment_link_id=%s error=%s", link.id, exc.code)
                continue
            if polled is not None and polled.status != PENDING:
                counts["resolved"] += 1
        return counts
