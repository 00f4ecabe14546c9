from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select, update

from paylink.common.db import utcnow
from paylink.common.errors import (
    HasSettledTransactions,
    InvalidTransition,
    NoActiveConfig,
    NotFound,
    NotOwner,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
    ValidationFailed,
)
from paylink.common.ratelimit import TokenBucketLimiter
from paylink.common.state_machine import CANCELLED, EXPIRED, PENDING, SUCCEEDED
from paylink.providers.stripe import StripeAdapter
from paylink.services.links.models import OutboxEvent, PaymentLink
from paylink.services.links.orchestrator import LinkCreationOrchestrator
from paylink.services.links.reconciliation import Outcome
from paylink.services.links.schemas import CreatePaymentLinkRequest

SESSION_PATH = "/v1/checkout/sessions"


def _session_created(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"})


def _request(config, **overrides) -> CreatePaymentLinkRequest:
    values = {"provider_config_id": config.id, "amount": 1000, "currency": "jpy", "description": "Tea set"}
    values.update(overrides)
    return CreatePaymentLinkRequest(**values)


def _backdate(session_factory, link_id, **values):
    with session_factory() as db:
        db.execute(update(PaymentLink).where(PaymentLink.id == link_id).values(**values))
        db.commit()


@pytest.fixture
def stripe_link(orchestrator, stripe_config, provider_stub):
    provider_stub.on("POST", SESSION_PATH, _session_created)
    return orchestrator.create_payment_link("owner-1", _request(stripe_config))


def test_create_payment_link_persists_pending_link(orchestrator, stripe_config, provider_stub, session_factory):
    provider_stub.on("POST", SESSION_PATH, _session_created)

    link = orchestrator.create_payment_link("owner-1", _request(stripe_config))

    assert link.status == PENDING
    assert link.currency == "JPY"
    assert link.provider == "stripe"
    assert link.provider_config_id == stripe_config.id
    assert link.provider_reference_id == "cs_test_1"
    assert link.link_url == "https://checkout.stripe.com/c/pay/cs_test_1"
    [call] = provider_stub.calls
    assert call.headers["Authorization"] == "Bearer sk_test_456"
    assert f"client_reference_id={link.id}" in call.content.decode()
    with session_factory() as db:
        events = list(db.execute(select(OutboxEvent).where(OutboxEvent.aggregate_id == link.id)).scalars())
    assert [e.topic for e in events] == ["payment_links.created"]
    assert events[0].payload["payload"]["link_url"] == link.link_url


def test_create_with_provider_only_uses_active_config(orchestrator, stripe_config, provider_stub):
    provider_stub.on("POST", SESSION_PATH, _session_created)
    link = orchestrator.create_payment_link(
        "owner-1", CreatePaymentLinkRequest(provider="stripe", amount=500, currency="USD")
    )
    assert link.provider_config_id == stripe_config.id


def test_provider_rejection_leaves_no_link(orchestrator, stripe_config, provider_stub):
    provider_stub.on(
        "POST",
        SESSION_PATH,
        lambda request: httpx.Response(400, json={"error": {"code": "parameter_invalid_integer"}}),
    )
    with pytest.raises(ProviderRejected) as excinfo:
        orchestrator.create_payment_link("owner-1", _request(stripe_config))
    assert excinfo.value.retryable is False
    assert excinfo.value.details["provider_code"] == "parameter_invalid_integer"
    assert orchestrator.list_payment_links("owner-1") == []


def test_provider_outage_is_retryable_and_leaves_no_link(orchestrator, stripe_config, provider_stub):
    provider_stub.on("POST", SESSION_PATH, lambda request: httpx.Response(503))
    with pytest.raises(ProviderUnavailable) as excinfo:
        orchestrator.create_payment_link("owner-1", _request(stripe_config))
    assert excinfo.value.retryable is True
    assert orchestrator.list_payment_links("owner-1") == []


def test_no_active_config(orchestrator, stripe_config, provider_stub):
    with pytest.raises(NoActiveConfig):
        orchestrator.create_payment_link(
            "owner-1", CreatePaymentLinkRequest(provider="paypal", amount=1000, currency="JPY")
        )
    with pytest.raises(NoActiveConfig):
        orchestrator.create_payment_link("owner-2", _request(stripe_config))
    with pytest.raises(NoActiveConfig):
        orchestrator.create_payment_link("owner-1", CreatePaymentLinkRequest(amount=1000, currency="JPY"))
    assert provider_stub.calls == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"currency": "KRW"},
        {"amount": 10},
        {"expires_at": utcnow() - timedelta(minutes=1)},
        {"expires_at": utcnow() + timedelta(days=400)},
    ],
)
def test_invalid_requests_never_reach_the_provider(orchestrator, stripe_config, provider_stub, overrides):
    with pytest.raises(ValidationFailed):
        orchestrator.create_payment_link("owner-1", _request(stripe_config, **overrides))
    assert provider_stub.calls == []


def test_owner_scoping(orchestrator, stripe_link):
    assert orchestrator.get_payment_link(stripe_link.id, "owner-1").id == stripe_link.id
    with pytest.raises(NotOwner):
        orchestrator.get_payment_link(stripe_link.id, "owner-2")
    with pytest.raises(NotFound):
        orchestrator.get_payment_link("pl-missing", "owner-1")
    assert orchestrator.list_payment_links("owner-2") == []


def test_poll_within_grace_does_not_call_provider(orchestrator, stripe_link, provider_stub):
    calls_before = len(provider_stub.calls)
    assert orchestrator.poll_status(stripe_link.id).status == PENDING
    assert len(provider_stub.calls) == calls_before


def test_poll_after_grace_reconciles_and_webhook_is_deduplicated(
    orchestrator, engine, stripe_link, provider_stub, session_factory
):
    _backdate(session_factory, stripe_link.id, created_at=utcnow() - timedelta(minutes=10))
    provider_stub.on(
        "GET",
        f"{SESSION_PATH}/cs_test_1",
        lambda request: httpx.Response(
            200,
            json={
                "id": "cs_test_1",
                "status": "complete",
                "payment_status": "paid",
                "payment_intent": "pi_1",
                "amount_total": 1000,
                "currency": "jpy",
            },
        ),
    )

    polled = orchestrator.poll_status(stripe_link.id)
    assert polled.status == SUCCEEDED
    assert polled.completed_at is not None

    webhook = StripeAdapter().parse_webhook_event(
        b'{"type": "checkout.session.completed", "data": {"object": {"id": "cs_test_1",'
        b' "payment_intent": "pi_1", "payment_status": "paid", "amount_total": 1000, "currency": "jpy"}}}'
    )
    assert engine.apply_provider_event(webhook) is Outcome.DUPLICATE
    assert len(orchestrator.store.transactions_for(stripe_link.id)) == 1


def test_poll_past_expiry_expires_without_provider_call(orchestrator, stripe_link, provider_stub, session_factory):
    _backdate(session_factory, stripe_link.id, expires_at=utcnow() - timedelta(seconds=1))
    calls_before = len(provider_stub.calls)
    assert orchestrator.poll_status(stripe_link.id).status == EXPIRED
    assert len(provider_stub.calls) == calls_before


def test_poll_unknown_link(orchestrator):
    with pytest.raises(NotFound):
        orchestrator.poll_status("pl-missing")


def test_cancel_expires_the_session_then_refuses_repeat(orchestrator, stripe_link, provider_stub):
    provider_stub.on("POST", f"{SESSION_PATH}/cs_test_1/expire", lambda request: httpx.Response(200, json={}))

    cancelled = orchestrator.cancel_payment_link(stripe_link.id, "owner-1")

    assert cancelled.status == CANCELLED
    assert provider_stub.calls[-1].url.path.endswith("/expire")
    with pytest.raises(InvalidTransition):
        orchestrator.cancel_payment_link(stripe_link.id, "owner-1")


def test_cancel_by_other_owner(orchestrator, stripe_link):
    with pytest.raises(NotOwner):
        orchestrator.cancel_payment_link(stripe_link.id, "owner-2")


def test_delete_pending_link(orchestrator, stripe_link):
    orchestrator.delete_payment_link(stripe_link.id, "owner-1")
    with pytest.raises(NotFound):
        orchestrator.get_payment_link(stripe_link.id, "owner-1")


def test_delete_paid_link_is_refused(orchestrator, engine, stripe_link):
    engine.apply_provider_event(
        StripeAdapter().parse_webhook_event(
            b'{"type": "checkout.session.completed", "data": {"object": {"id": "cs_test_1",'
            b' "payment_intent": "pi_1", "payment_status": "paid"}}}'
        )
    )
    with pytest.raises(HasSettledTransactions):
        orchestrator.delete_payment_link(stripe_link.id, "owner-1")

def test_rate_limited_owner_never_reaches_the_provider(
    store, engine, configs, stripe_config, provider_stub, fake_redis
):
    provider_stub.on("POST", SESSION_PATH, _session_created)
    limited = LinkCreationOrchestrator(store, engine, configs, rate_limiter=TokenBucketLimiter(fake_redis, 1))

    limited.create_payment_link("owner-1", _request(stripe_config))
    with pytest.raises(RateLimited):
        limited.create_payment_link("owner-1", _request(stripe_config))
    assert len(provider_stub.calls) == 1
