import hashlib
import hmac
import json

import pytest
from sqlalchemy import exc as sa_exc

from paylink.common.state_machine import PENDING, SUCCEEDED
from paylink.services.links.webhooks import WebhookReceiver

SECRET = "pp-secret"


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, {"X-PayPay-Signature": signature, "Content-Type": "application/json"}


def _completed(link, payment_id="PP-1") -> dict:
    return {
        "eventType": "payment.completed",
        "data": {
            "merchantPaymentId": link.id,
            "codeId": link.provider_reference_id,
            "paymentId": payment_id,
            "amount": {"amount": 1000, "currency": "JPY"},
        },
    }


@pytest.fixture
def receiver(engine):
    return WebhookReceiver(engine, secrets=lambda: {"paypay": SECRET, "stripe": None})


def test_valid_webhook_applies_then_deduplicates(receiver, store, make_link):
    link = make_link()
    body, headers = _signed(_completed(link))

    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "applied"})
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "duplicate"})
    assert store.get(link.id).status == SUCCEEDED
    assert len(store.transactions_for(link.id)) == 1


def test_bad_signature_is_rejected_before_parsing(receiver, store, make_link):
    link = make_link()
    body, headers = _signed(_completed(link))
    headers["X-PayPay-Signature"] = "0" * 64

    assert receiver.handle("paypay", body, headers) == (401, {"outcome": "invalid_signature"})
    assert receiver.handle("paypay", b"not json", headers) == (401, {"outcome": "invalid_signature"})
    assert receiver.handle("paypay", body, {}) == (401, {"outcome": "invalid_signature"})
    assert store.get(link.id).status == PENDING
    assert store.transactions_for(link.id) == []


def test_provider_without_secret_is_unconfigured(receiver):
    assert receiver.handle("stripe", b"{}", {"Stripe-Signature": "t=1,v1=abc"}) == (401, {"outcome": "unconfigured"})


def test_unknown_provider(receiver):
    status, _ = receiver.handle("venmo", b"{}", {})
    assert status == 404


def test_authenticated_but_malformed_body_is_acknowledged(receiver):
    body = b"{truncated"
    headers = {"X-PayPay-Signature": hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()}
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "malformed"})


def test_unmatched_event_is_acknowledged_as_orphan(receiver, store):
    body, headers = _signed(
        {"eventType": "payment.completed", "data": {"merchantPaymentId": "pl-none", "codeId": "code-none"}}
    )
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "orphan"})
    assert len(store.anomalies(kind="orphan")) == 1


def test_irrelevant_event_type_is_ignored(receiver, make_link):
    link = make_link()
    body, headers = _signed({"eventType": "payment.authorized", "data": {"merchantPaymentId": link.id}})
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "ignored"})


class FailingEngine:
    def __init__(self, error):
        self.error = error

    def apply_provider_event(self, event):
        raise self.error


def test_store_failure_asks_for_redelivery(make_link):
    link = make_link()
    receiver = WebhookReceiver(
        FailingEngine(sa_exc.OperationalError("INSERT", {}, Exception("database is locked"))),
        secrets=lambda: {"paypay": SECRET},
    )
    body, headers = _signed(_completed(link))
    assert receiver.handle("paypay", body, headers) == (503, {"outcome": "store_unavailable"})


def test_unexpected_error_is_acknowledged(make_link):
    link = make_link()
    receiver = WebhookReceiver(FailingEngine(RuntimeError("boom")), secrets=lambda: {"paypay": SECRET})
    body, headers = _signed(_completed(link))
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "error"})


def test_flat_amount_falls_back_to_link_amount(receiver, store, make_link):
    link = make_link()
    payload = _completed(link)
    payload["data"]["amount"] = 1000
    body, headers = _signed(payload)

    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "applied"})
    [txn] = store.transactions_for(link.id)
    assert (txn.amount, txn.currency) == (1000, "JPY")


def test_wrongly_shaped_data_is_acknowledged(receiver):
    body, headers = _signed({"eventType": "payment.completed", "data": "oops"})
    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "ignored"})


class BrokenParser:
    signature_header = "x-paypay-signature"

    def extract_signature(self, headers):
        return headers.get("X-PayPay-Signature", "")

    def verify_webhook_signature(self, raw_body, signature, secret):
        return True

    def parse_webhook_event(self, raw_body):
        raise KeyError("amount")


def test_parse_error_is_acknowledged_not_raised(engine, store, make_link):
    link = make_link()
    receiver = WebhookReceiver(
        engine, secrets=lambda: {"paypay": SECRET}, adapter_factory=lambda provider: BrokenParser()
    )
    body, headers = _signed(_completed(link))

    assert receiver.handle("paypay", body, headers) == (200, {"outcome": "error"})
    assert store.get(link.id).status == PENDING
