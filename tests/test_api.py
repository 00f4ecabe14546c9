import hashlib
import hmac
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from paylink.common.config import settings
from paylink.services.links import main
from paylink.services.links.webhooks import WebhookReceiver

OWNER = {"x-api-key": settings.api_key, "x-owner-id": "owner-1"}


@pytest.fixture
def client(monkeypatch, orchestrator, store, configs, engine):
    monkeypatch.setattr(main, "orchestrator", orchestrator)
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "configs", configs)
    monkeypatch.setattr(main, "receiver", WebhookReceiver(engine, secrets=lambda: {"paypay": "pp-secret"}))
    # No context manager: the outbox publisher lifespan needs Kafka.
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_api_key_is_required(client):
    assert client.get("/payment-links", headers={"x-owner-id": "owner-1"}).status_code == 401


def test_provider_config_lifecycle_never_returns_secrets(client):
    created = client.post(
        "/provider-configs",
        headers=OWNER,
        json={
            "provider": "stripe",
            "display_name": "Main Stripe",
            "credentials": {"publishable_key": "pk_test_1", "secret_key": "sk_test_2"},
        },
    )
    assert created.status_code == 201
    assert "sk_test_2" not in created.text
    config_id = created.json()["id"]

    public = client.get(f"/provider-configs/{config_id}/public-fields", headers=OWNER)
    assert public.json() == {"publishable_key": "pk_test_1"}

    invalid = client.post(
        "/provider-configs",
        headers=OWNER,
        json={"provider": "stripe", "display_name": "Bad", "credentials": {"secret_key": "sk_live_9"}},
    )
    assert invalid.status_code == 400
    assert "sk_live_9" not in invalid.text


def test_create_and_read_link(client, stripe_config, provider_stub):
    provider_stub.on(
        "POST",
        "/v1/checkout/sessions",
        lambda request: httpx.Response(200, json={"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}),
    )
    created = client.post(
        "/payment-links",
        headers=OWNER,
        json={"provider_config_id": stripe_config.id, "amount": 1000, "currency": "JPY"},
    )
    assert created.status_code == 201
    link = created.json()
    assert link["status"] == "pending"
    assert link["link_url"] == "https://checkout.stripe.com/c/cs_test_1"

    detail = client.get(f"/payment-links/{link['id']}", headers=OWNER).json()
    assert [entry["to_status"] for entry in detail["timeline"]] == ["pending"]
    assert detail["transactions"] == []

    other = client.get(f"/payment-links/{link['id']}", headers={**OWNER, "x-owner-id": "owner-2"})
    assert other.status_code == 403

    status = client.get(f"/payment-links/{link['id']}/status", headers=OWNER)
    assert status.json()["status"] == "pending"


def test_provider_errors_map_to_stable_bodies(client, stripe_config, provider_stub):
    provider_stub.on("POST", "/v1/checkout/sessions", lambda request: httpx.Response(502))
    response = client.post(
        "/payment-links",
        headers=OWNER,
        json={"provider_config_id": stripe_config.id, "amount": 1000, "currency": "JPY"},
    )
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "provider_unavailable"
    assert response.json()["detail"]["retryable"] is True


def test_webhook_route(client, make_link):
    link = make_link()
    body = json.dumps(
        {
            "eventType": "payment.completed",
            "data": {"merchantPaymentId": link.id, "codeId": link.provider_reference_id, "paymentId": "PP-1"},
        }
    ).encode()
    signature = hmac.new(b"pp-secret", body, hashlib.sha256).hexdigest()

    response = client.post("/webhooks/paypay", content=body, headers={"x-paypay-signature": signature})

    assert response.status_code == 200
    assert response.json() == {"outcome": "applied"}
    assert client.get(f"/payment-links/{link.id}", headers=OWNER).json()["status"] == "succeeded"
    assert client.post("/webhooks/paypay", content=body, headers={"x-paypay-signature": "bad"}).status_code == 401


def test_owner_transaction_listing(client, make_link):
    link = make_link()
    make_link(owner_id="owner-2")
    body = json.dumps(
        {"eventType": "payment.completed", "data": {"merchantPaymentId": link.id, "paymentId": "PP-7"}}
    ).encode()
    signature = hmac.new(b"pp-secret", body, hashlib.sha256).hexdigest()
    assert client.post("/webhooks/paypay", content=body, headers={"x-paypay-signature": signature}).status_code == 200

    listed = client.get("/transactions", headers=OWNER)
    assert listed.status_code == 200
    [txn] = listed.json()
    assert (txn["payment_link_id"], txn["provider"]) == (link.id, "paypay")
    assert (txn["provider_transaction_id"], txn["status"], txn["amount"]) == ("PP-7", "completed", 1000)

    assert client.get("/transactions", headers={**OWNER, "x-owner-id": "owner-2"}).json() == []
    assert client.get("/transactions", params={"status": "failed"}, headers=OWNER).json() == []
    assert client.get("/transactions", headers={"x-owner-id": "owner-1"}).status_code == 401
