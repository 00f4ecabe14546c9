from datetime import timedelta

from sqlalchemy import select

from paylink.common.db import utcnow
from paylink.common.errors import ProviderUnavailable
from paylink.common.state_machine import (
    CANCELLED,
    EXPIRED,
    FAILED,
    PENDING,
    SUCCEEDED,
    TXN_CANCELLED,
    TXN_COMPLETED,
    TXN_FAILED,
    TXN_REFUNDED,
)
from paylink.providers.base import CanonicalStatus, ProviderEvent, StatusSnapshot
from paylink.services.links.models import OutboxEvent
from paylink.services.links.reconciliation import Outcome, ReconciliationEngine
from paylink.services.links.store import PaymentLinkStore


def _event(link, status, txn_id, **overrides):
    values = {
        "provider": "paypay",
        "event_type": f"payment.{status.value}",
        "canonical_status": status,
        "provider_reference_id": link.provider_reference_id,
        "link_reference": link.id,
        "provider_transaction_id": txn_id,
        "amount": 1000,
        "currency": "JPY",
    }
    values.update(overrides)
    return ProviderEvent(**values)


def _terminal_events(session_factory, link_id):
    with session_factory() as db:
        stmt = select(OutboxEvent.topic).where(
            OutboxEvent.aggregate_id == link_id, OutboxEvent.topic != "payment_links.created"
        )
        return list(db.execute(stmt).scalars())


class StaticAdapter:
    """Answers every status poll with the same snapshot."""

    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot
        self.error = error
        self.polls = []

    def get_status(self, provider_reference_id, reference=None, metadata=None):
        self.polls.append(provider_reference_id)
        if self.error is not None:
            raise self.error
        return self.snapshot


def test_success_webhook_applies_once(engine, store, session_factory, make_link):
    link = make_link()
    event = _event(link, CanonicalStatus.SUCCEEDED, "PP-1")

    assert engine.apply_provider_event(event) is Outcome.APPLIED
    assert engine.apply_provider_event(event) is Outcome.DUPLICATE

    stored = store.get(link.id)
    assert stored.status == SUCCEEDED
    assert stored.completed_at is not None
    transactions = store.transactions_for(link.id)
    assert [(t.provider_transaction_id, t.status) for t in transactions] == [("PP-1", TXN_COMPLETED)]
    assert transactions[0].paid_at is not None
    assert _terminal_events(session_factory, link.id) == ["payment_links.succeeded"]


def test_late_success_after_failure_is_recorded_not_applied(engine, store, session_factory, make_link):
    link = make_link()
    assert engine.apply_provider_event(_event(link, CanonicalStatus.FAILED, "PP-1:failed")) is Outcome.APPLIED

    outcome = engine.apply_provider_event(_event(link, CanonicalStatus.SUCCEEDED, "PP-late"))

    assert outcome is Outcome.RECORDED
    stored = store.get(link.id)
    assert stored.status == FAILED
    assert stored.completed_at is None
    statuses = {t.provider_transaction_id: t.status for t in store.transactions_for(link.id)}
    assert statuses == {"PP-1:failed": TXN_FAILED, "PP-late": TXN_COMPLETED}
    anomalies = store.anomalies(kind="conflicting_terminal")
    assert [(a.payment_link_id, a.provider_transaction_id) for a in anomalies] == [(link.id, "PP-late")]
    assert _terminal_events(session_factory, link.id) == ["payment_links.failed"]


def test_same_terminal_status_twice_is_not_an_anomaly(engine, store, make_link):
    link = make_link()
    engine.apply_provider_event(_event(link, CanonicalStatus.FAILED, "PP-1:failed"))
    assert engine.apply_provider_event(_event(link, CanonicalStatus.FAILED, "PP-2:failed")) is Outcome.RECORDED
    assert store.get(link.id).status == FAILED
    assert store.anomalies() == []


def test_unmatched_event_is_kept_as_orphan(engine, store):
    event = ProviderEvent(
        provider="paypay",
        event_type="payment.completed",
        canonical_status=CanonicalStatus.SUCCEEDED,
        provider_reference_id="code-unknown",
        link_reference="pl-unknown",
        provider_transaction_id="PP-9",
    )
    assert engine.apply_provider_event(event) is Outcome.ORPHAN
    orphans = store.anomalies(kind="orphan")
    assert len(orphans) == 1
    assert orphans[0].provider_reference_id == "code-unknown"
    assert orphans[0].detail["link_reference"] == "pl-unknown"


def test_event_for_another_provider_does_not_match_by_link_id(engine, store, make_link):
    link = make_link()
    event = _event(link, CanonicalStatus.SUCCEEDED, "pi_1", provider="stripe", provider_reference_id=None)
    assert engine.apply_provider_event(event) is Outcome.ORPHAN
    assert store.get(link.id).status == PENDING


def test_link_reference_matches_when_provider_reference_is_missing(engine, store, make_link):
    link = make_link()
    event = _event(link, CanonicalStatus.FAILED, "PP-1:failed", provider_reference_id=None)
    assert engine.apply_provider_event(event) is Outcome.APPLIED
    assert store.get(link.id).status == FAILED


def test_in_progress_event_changes_nothing(engine, store, make_link):
    link = make_link()
    event = _event(link, CanonicalStatus.IGNORED, None, event_type="payment.authorized")
    assert engine.apply_provider_event(event) is Outcome.IGNORED
    assert store.get(link.id).status == PENDING
    assert store.transactions_for(link.id) == []


def test_refund_records_transaction_without_moving_link(engine, store, make_link):
    link = make_link()
    engine.apply_provider_event(_event(link, CanonicalStatus.SUCCEEDED, "PP-1"))
    outcome = engine.apply_provider_event(_event(link, CanonicalStatus.REFUNDED, "PP-1:refunded"))
    assert outcome is Outcome.RECORDED
    assert store.get(link.id).status == SUCCEEDED
    statuses = sorted(t.status for t in store.transactions_for(link.id))
    assert statuses == sorted([TXN_COMPLETED, TXN_REFUNDED])


def test_missing_transaction_id_is_derived_from_reference(engine, store, make_link):
    link = make_link()
    event = _event(link, CanonicalStatus.EXPIRED, None)
    assert engine.apply_provider_event(event) is Outcome.APPLIED
    assert engine.apply_provider_event(event) is Outcome.DUPLICATE
    [txn] = store.transactions_for(link.id)
    assert txn.provider_transaction_id == f"{link.provider_reference_id}:expired"


class RacingStore(PaymentLinkStore):
    """Lets a competing writer commit between our read and our write."""

    def __init__(self, session_factory, competitor):
        super().__init__(session_factory)
        self.competitor = competitor

    def find_for_event(self, db, provider, provider_reference_id, link_reference):
        link = super().find_for_event(db, provider, provider_reference_id, link_reference)
        if self.competitor is not None:
            competitor, self.competitor = self.competitor, None
            competitor()
        return link


def test_concurrent_terminal_events_only_one_wins(session_factory, store, make_link):
    link = make_link()
    rival = ReconciliationEngine(session_factory, store, lambda link: None)
    racing = RacingStore(
        session_factory,
        competitor=lambda: rival.apply_provider_event(_event(link, CanonicalStatus.FAILED, "PP-1:failed")),
    )
    engine = ReconciliationEngine(session_factory, racing, lambda link: None)

    outcome = engine.apply_provider_event(_event(link, CanonicalStatus.SUCCEEDED, "PP-2"))

    assert outcome is Outcome.RECORDED
    stored = store.get(link.id)
    assert stored.status == FAILED
    assert stored.state_version == 1
    assert {t.provider_transaction_id for t in store.transactions_for(link.id)} == {"PP-1:failed", "PP-2"}
    assert [a.kind for a in store.anomalies()] == ["conflicting_terminal"]
    assert _terminal_events(session_factory, link.id) == ["payment_links.failed"]


def test_expire_overdue_links(engine, store, make_link):
    overdue = make_link(expires_at=utcnow() - timedelta(seconds=5))
    open_link = make_link(expires_at=utcnow() + timedelta(hours=1))

    assert engine.expire_overdue_links() == 1
    assert store.get(overdue.id).status == EXPIRED
    assert store.get(open_link.id).status == PENDING
    assert engine.expire_link(store.get(overdue.id)) is Outcome.DUPLICATE


def test_sweep_polls_only_links_past_grace(session_factory, store, make_link):
    adapter = StaticAdapter(StatusSnapshot(CanonicalStatus.SUCCEEDED, provider_transaction_id="PP-1", amount=1000))
    engine = ReconciliationEngine(session_factory, store, lambda link: adapter)
    old = make_link(created_at=utcnow() - timedelta(hours=1))
    fresh = make_link()

    assert engine.sweep_pending_links() == {"polled": 1, "resolved": 1, "errors": 0}
    assert adapter.polls == [old.provider_reference_id]
    assert store.get(old.id).status == SUCCEEDED
    assert store.get(fresh.id).status == PENDING
    assert store.transactions_for(old.id)[0].txn_metadata["source"] == "poll"


def test_sweep_counts_provider_errors(session_factory, store, make_link):
    adapter = StaticAdapter(error=ProviderUnavailable("down"))
    engine = ReconciliationEngine(session_factory, store, lambda link: adapter)
    link = make_link(created_at=utcnow() - timedelta(hours=1))

    assert engine.sweep_pending_links() == {"polled": 1, "resolved": 0, "errors": 1}
    assert store.get(link.id).status == PENDING


def test_poll_in_progress_leaves_link_pending(session_factory, store, make_link):
    adapter = StaticAdapter(StatusSnapshot(CanonicalStatus.IGNORED))
    engine = ReconciliationEngine(session_factory, store, lambda link: adapter)
    link = make_link()
    assert engine.reconcile_by_polling(link.id).status == PENDING
    assert store.transactions_for(link.id) == []


def test_owner_cancel_goes_through_the_same_path(engine, store, session_factory, make_link):
    link = make_link()
    event = engine.synthesized_event(link, CanonicalStatus.CANCELLED, "owner")
    assert engine.apply_provider_event(event) is Outcome.APPLIED
    [txn] = store.transactions_for(link.id)
    assert (txn.provider_transaction_id, txn.status) == (f"{link.id}:cancelled", TXN_CANCELLED)
    assert store.get(link.id).status == CANCELLED
    assert _terminal_events(session_factory, link.id) == ["payment_links.cancelled"]
