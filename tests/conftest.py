"""Shared fixtures: a file-backed SQLite database per test and wired services."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from paylink.common.db import Base
from paylink.services.links.models import PaymentLink
from paylink.services.links.orchestrator import LinkCreationOrchestrator, new_link_id
from paylink.services.links.reconciliation import ReconciliationEngine
from paylink.services.links.store import PaymentLinkStore
from paylink.services.vault.crypto import CredentialVault
from paylink.services.vault.schemas import ProviderConfigCreate
from paylink.services.vault.service import ProviderConfigService

STRIPE_CREDENTIALS = {
    "publishable_key": "pk_test_123",
    "secret_key": "sk_test_456",
    "webhook_secret": "whsec_789",
}


class ProviderStub:
    """Records provider HTTP calls and answers from a route table."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}

    def on(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": {"code": "resource_missing"}})
        if callable(response):
            return response(request)
        return response


class FakeRedis:
    """The three hash commands the token bucket uses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        self.ttls[key] = seconds


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'paylink.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def vault():
    return CredentialVault(Fernet.generate_key().decode())


@pytest.fixture
def provider_stub():
    return ProviderStub()


@pytest.fixture
def configs(session_factory, vault, provider_stub):
    client = httpx.Client(transport=httpx.MockTransport(provider_stub))
    return ProviderConfigService(session_factory, vault, http_client=client)


@pytest.fixture
def store(session_factory):
    return PaymentLinkStore(session_factory)


@pytest.fixture
def engine(session_factory, store, configs):
    return ReconciliationEngine(session_factory, store, lambda link: configs.adapter_for(link.provider_config_id))


@pytest.fixture
def orchestrator(store, engine, configs):
    return LinkCreationOrchestrator(store, engine, configs)


@pytest.fixture
def stripe_credentials():
    return dict(STRIPE_CREDENTIALS)


@pytest.fixture
def stripe_config(configs):
    return configs.create_config(
        "owner-1",
        ProviderConfigCreate(provider="stripe", display_name="Main Stripe", credentials=STRIPE_CREDENTIALS),
    )


@pytest.fixture
def make_link(store):
    def _make(**overrides) -> PaymentLink:
        values = {
            "id": new_link_id(),
            "owner_id": "owner-1",
            "provider": "paypay",
            "provider_config_id": None,
            "amount": 1000,
            "currency": "JPY",
            "provider_reference_id": f"code-{new_link_id()}",
            "link_url": "https://qr.example/pay",
            "link_metadata": {},
        }
        values.update(overrides)
        return store.create(PaymentLink(**values))

    return _make


@pytest.fixture
def fake_redis():
    return FakeRedis()
