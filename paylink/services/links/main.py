"""HTTP surface for payment links, provider configs and provider webhooks."""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from paylink.common.config import settings
from paylink.common.db import SessionLocal
from paylink.common.errors import PaylinkError
from paylink.common.events import KafkaBus
from paylink.common.logging import configure_logging, logger, trace_id_ctx
from paylink.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paylink.common.outbox import run_outbox_publisher
from paylink.common.ratelimit import TokenBucketLimiter
from paylink.common.startup import log_startup_config
from paylink.common.tracing import instrument_app, setup_tracing
from paylink.services.links.models import OutboxEvent
from paylink.services.links.orchestrator import LinkCreationOrchestrator
from paylink.services.links.reconciliation import ReconciliationEngine
from paylink.services.links.schemas import (
    CreatePaymentLinkRequest,
    OwnerTransactionView,
    PaymentLinkDetail,
    PaymentLinkView,
    TimelineEntryView,
    TransactionView,
)
from paylink.services.links.store import PaymentLinkStore
from paylink.services.links.webhooks import WebhookReceiver
from paylink.services.vault.crypto import CredentialVault
from paylink.services.vault.schemas import (
    ProviderConfigCreate,
    ProviderConfigUpdate,
    ProviderConfigView,
    VerifyResult,
)
from paylink.services.vault.service import ProviderConfigService

configure_logging()
setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
log_startup_config(settings)

configs = ProviderConfigService(SessionLocal, CredentialVault())
store = PaymentLinkStore(SessionLocal)
engine = ReconciliationEngine(
    SessionLocal,
    store,
    lambda link: configs.adapter_for(link.provider_config_id),
    service_name=settings.service_name,
)
orchestrator = LinkCreationOrchestrator(
    store,
    engine,
    configs,
    rate_limiter=TokenBucketLimiter.from_url(settings.redis_url, settings.rate_limit_per_minute, settings.service_name),
    service_name=settings.service_name,
)
receiver = WebhookReceiver(engine, service_name=settings.service_name)
kafka = KafkaBus()


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the application lifecycle."""

    publisher_task = asyncio.create_task(
        run_outbox_publisher(SessionLocal, OutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="Paylink", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name, route=route, method=method, status_code=str(status_code)
        ).inc()


def error_body(exc: PaylinkError) -> dict:
    """Stable error payload: what failed, and whether retrying can help."""

    return {"code": exc.code, "message": exc.message, "retryable": exc.retryable, "details": exc.details}


@app.exception_handler(PaylinkError)
async def paylink_error_handler(_: Request, exc: PaylinkError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("request failed code=%s", exc.code)
    return JSONResponse(status_code=exc.http_status, content={"detail": error_body(exc)})


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def require_owner(x_owner_id: str | None) -> str:
    if not x_owner_id:
        raise HTTPException(status_code=401, detail="missing owner")
    return x_owner_id


@app.post("/payment-links", response_model=PaymentLinkView, status_code=201)
def create_payment_link(
    req: CreatePaymentLinkRequest,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    """Open a charge at the provider and persist the pending link."""

    enforce_api_key(x_api_key)
    link = orchestrator.create_payment_link(require_owner(x_owner_id), req)
    return PaymentLinkView.model_validate(link)


@app.get("/payment-links", response_model=list[PaymentLinkView])
def list_payment_links(
    status: str | None = None,
    limit: int = 50,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    links = orchestrator.list_payment_links(require_owner(x_owner_id), status=status, limit=min(limit, 200))
    return [PaymentLinkView.model_validate(link) for link in links]


@app.get("/payment-links/{link_id}", response_model=PaymentLinkDetail)
def get_payment_link(
    link_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    """Owner view of one link with its transactions and status history."""

    enforce_api_key(x_api_key)
    link = orchestrator.get_payment_link(link_id, require_owner(x_owner_id))
    detail = PaymentLinkDetail.model_validate(link)
    detail.transactions = [TransactionView.model_validate(t) for t in store.transactions_for(link_id)]
    detail.timeline = [TimelineEntryView.model_validate(t) for t in store.timeline_for(link_id)]
    return detail


@app.get("/payment-links/{link_id}/status", response_model=PaymentLinkView)
def poll_status(link_id: str, x_api_key: str | None = Header(default=None)):
    """Client poll; reconciles with the provider once the grace window has passed."""

    enforce_api_key(x_api_key)
    return PaymentLinkView.model_validate(orchestrator.poll_status(link_id))


@app.post("/payment-links/{link_id}/cancel", response_model=PaymentLinkView)
def cancel_payment_link(
    link_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return PaymentLinkView.model_validate(orchestrator.cancel_payment_link(link_id, require_owner(x_owner_id)))


@app.delete("/payment-links/{link_id}", status_code=204)
def delete_payment_link(
    link_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    orchestrator.delete_payment_link(link_id, require_owner(x_owner_id))
    return Response(status_code=204)


@app.get("/transactions", response_model=list[OwnerTransactionView])
def list_transactions(
    status: str | None = None,
    provider: str | None = None,
    payment_link_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    """Settlement history across every link the caller owns."""

    enforce_api_key(x_api_key)
    rows = store.transactions_for_owner(
        require_owner(x_owner_id),
        status=status,
        provider=provider,
        payment_link_id=payment_link_id,
        limit=max(1, min(limit, 200)),
        offset=max(0, offset),
    )
    views = []
    for txn, link_provider in rows:
        view = OwnerTransactionView.model_validate(txn)
        view.provider = link_provider
        views.append(view)
    return views


@app.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request):
    """Provider notifications; authenticated by signature, not API key."""

    raw_body = await request.body()
    status_code, body = await run_in_threadpool(receiver.handle, provider, raw_body, dict(request.headers))
    return JSONResponse(status_code=status_code, content=body)


@app.post("/provider-configs", response_model=ProviderConfigView, status_code=201)
def create_provider_config(
    req: ProviderConfigCreate,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return ProviderConfigView.model_validate(configs.create_config(require_owner(x_owner_id), req))


@app.get("/provider-configs", response_model=list[ProviderConfigView])
def list_provider_configs(
    provider: str | None = None,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return [ProviderConfigView.model_validate(c) for c in configs.list_configs(require_owner(x_owner_id), provider)]


@app.get("/provider-configs/{config_id}", response_model=ProviderConfigView)
def get_provider_config(
    config_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return ProviderConfigView.model_validate(configs.get_config(config_id, require_owner(x_owner_id)))


@app.patch("/provider-configs/{config_id}", response_model=ProviderConfigView)
def update_provider_config(
    config_id: str,
    req: ProviderConfigUpdate,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return ProviderConfigView.model_validate(configs.update_config(config_id, require_owner(x_owner_id), req))


@app.delete("/provider-configs/{config_id}", status_code=204)
def delete_provider_config(
    config_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    configs.delete_config(config_id, require_owner(x_owner_id))
    return Response(status_code=204)


@app.post("/provider-configs/{config_id}/verify", response_model=VerifyResult)
def verify_provider_config(
    config_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    """Test connection: one authenticated call with the stored credentials."""

    enforce_api_key(x_api_key)
    return configs.verify_config(config_id, require_owner(x_owner_id))


@app.get("/provider-configs/{config_id}/public-fields")
def provider_config_public_fields(
    config_id: str,
    x_api_key: str | None = Header(default=None),
    x_owner_id: str | None = Header(default=None),
):
    """Non-secret credential fields, e.g. a publishable key for client-side SDKs."""

    enforce_api_key(x_api_key)
    return configs.decrypt_for_display(config_id, require_owner(x_owner_id))


@app.get("/reconciliation/anomalies")
def list_anomalies(kind: str | None = None, limit: int = 100, x_api_key: str | None = Header(default=None)):
    """Events parked for manual review."""

    enforce_api_key(x_api_key)
    return [
        {
            "id": row.id,
            "kind": row.kind,
            "provider": row.provider,
            "payment_link_id": row.payment_link_id,
            "provider_reference_id": row.provider_reference_id,
            "provider_transaction_id": row.provider_transaction_id,
            "event_type": row.event_type,
            "detail": row.detail,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in store.anomalies(kind=kind, limit=min(limit, 500))
    ]


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
