"""Link creation and the owner-facing link operations.

Creation validates the request, resolves the owner's active provider config,
opens a charge at the provider and only then persists the pending link, so a
provider failure leaves nothing behind.
"""

import secrets
from datetime import timedelta
from time import perf_counter
from urllib.parse import urlencode

from paylink.common.config import settings
from paylink.common.currency import minimum_amount
from paylink.common.db import as_utc, utcnow
from paylink.common.errors import (
    InvalidTransition,
    NotFound,
    NotOwner,
    PaylinkError,
    ProviderRejected,
    ValidationFailed,
)
from paylink.common.logging import logger, payment_link_id_ctx
from paylink.common.metrics import (
    link_creation_failures_total,
    link_creation_latency_seconds,
    link_requests_total,
    links_created_total,
    status_polls_total,
)
from paylink.common.state_machine import PENDING
from paylink.providers.base import CanonicalStatus, Provider, ReturnUrls
from paylink.providers.registry import ADAPTERS
from paylink.services.links.models import PaymentLink
from paylink.services.links.reconciliation import ReconciliationEngine, poll_grace_seconds
from paylink.services.links.schemas import CreatePaymentLinkRequest
from paylink.services.links.store import PaymentLinkStore
from paylink.services.vault.service import ProviderConfigService

MAX_EXPIRY = timedelta(days=365)


def new_link_id() -> str:
    # 26 chars: fits every provider's merchant reference limit.
    return f"pl{secrets.token_hex(12)}"


def return_urls(link_id: str) -> ReturnUrls:
    query = urlencode({"link_id": link_id})
    return ReturnUrls(
        success_url=f"{settings.public_base_url}/payment/success?{query}",
        cancel_url=f"{settings.public_base_url}/payment/cancel?{query}",
    )


class LinkCreationOrchestrator:
    def __init__(
        self,
        store: PaymentLinkStore,
        engine: ReconciliationEngine,
        configs: ProviderConfigService,
        rate_limiter=None,
        service_name: str = "paylink",
    ) -> None:
        self.store = store
        self.engine = engine
        self.configs = configs
        self.rate_limiter = rate_limiter
        self.service_name = service_name

    def _validate(self, req: CreatePaymentLinkRequest) -> None:
        if req.amount <= 0:
            raise ValidationFailed("amount must be positive", field="amount")
        if req.expires_at is not None:
            expires_at = as_utc(req.expires_at)
            now = utcnow()
            if expires_at <= now:
                raise ValidationFailed("expires_at must be in the future", field="expires_at")
            if expires_at > now + MAX_EXPIRY:
                raise ValidationFailed("expires_at must be within one year", field="expires_at")

    def _validate_for_provider(self, provider: Provider, req: CreatePaymentLinkRequest) -> None:
        if req.currency not in ADAPTERS[provider].supported_currencies:
            raise ValidationFailed(
                f"{provider.value} does not support {req.currency}", field="currency", provider=provider.value
            )
        minimum = minimum_amount(req.currency)
        if req.amount < minimum:
            raise ValidationFailed(f"amount is below the {req.currency} minimum of {minimum}", field="amount")

    def create_payment_link(self, owner_id: str, req: CreatePaymentLinkRequest) -> PaymentLink:
        link_requests_total.labels(service=self.service_name).inc()
        provider_label = req.provider.value if req.provider else "unknown"
        start = perf_counter()
        try:
            if self.rate_limiter is not None:
                self.rate_limiter.check(owner_id)
            self._validate(req)
            config = self.configs.resolve_active_config(
                owner_id,
                config_id=req.provider_config_id,
                provider=req.provider.value if req.provider else None,
            )
            provider = Provider(config.provider)
            provider_label = provider.value
            if req.provider is not None and req.provider is not provider:
                raise ValidationFailed("provider does not match the provider config", field="provider")
            self._validate_for_provider(provider, req)

            link_id = new_link_id()
            payment_link_id_ctx.set(link_id)
            adapter = self.configs.build_adapter(config)
            charge = adapter.create_charge(
                req.amount,
                req.currency,
                link_id,
                return_urls(link_id),
                description=req.description,
                metadata=req.metadata,
            )
            link = self.store.create(
                PaymentLink(
                    id=link_id,
                    owner_id=owner_id,
                    provider=provider.value,
                    provider_config_id=config.id,
                    amount=req.amount,
                    currency=req.currency,
                    description=req.description,
                    provider_reference_id=charge.provider_reference_id,
                    link_url=charge.pay_url,
                    expires_at=as_utc(req.expires_at),
                    link_metadata=dict(req.metadata),
                )
            )
        except PaylinkError as exc:
            link_creation_failures_total.labels(
                service=self.service_name, provider=provider_label, error_code=exc.code
            ).inc()
            logger.warning("payment link creation failed provider=%s error=%s", provider_label, exc.code)
            raise
        finally:
            link_creation_latency_seconds.labels(service=self.service_name).observe(max(0.0, perf_counter() - start))

        links_created_total.labels(service=self.service_name, provider=provider.value).inc()
        logger.info("payment link created payment_link_id=%s provider=%s", link.id, provider.value)
        return link

    def get_payment_link(self, link_id: str, owner_id: str) -> PaymentLink:
        link = self.store.get(link_id)
        if link is None:
            raise NotFound("payment link not found")
        if link.owner_id != owner_id:
            raise NotOwner("payment link belongs to another owner")
        return link

    def list_payment_links(self, owner_id: str, status: str | None = None, limit: int = 50) -> list[PaymentLink]:
        return self.store.list_for_owner(owner_id, status=status, limit=limit)

    def poll_status(self, link_id: str) -> PaymentLink:
        """Current view of a link; asks the provider only once the grace window has passed."""

        link = self.store.get(link_id)
        if link is None:
            raise NotFound("payment link not found")
        payment_link_id_ctx.set(link.id)
        if link.status != PENDING:
            status_polls_total.labels(service=self.service_name, outcome="terminal").inc()
            return link

        now = utcnow()
        expires_at = as_utc(link.expires_at)
        if expires_at is not None and expires_at <= now:
            self.engine.expire_link(link)
            status_polls_total.labels(service=self.service_name, outcome="expired").inc()
            return self.store.get(link_id)

        created_at = as_utc(link.created_at) or now
        if now - created_at < timedelta(seconds=poll_grace_seconds(link.provider)):
            status_polls_total.labels(service=self.service_name, outcome="within_grace").inc()
            return link

        polled = self.engine.reconcile_by_polling(link_id)
        status_polls_total.labels(service=self.service_name, outcome="polled").inc()
        return polled or link

    def cancel_payment_link(self, link_id: str, owner_id: str) -> PaymentLink:
        link = self.get_payment_link(link_id, owner_id)
        if link.status != PENDING:
            raise InvalidTransition(f"payment link is already {link.status}")
        adapter = self.engine.adapter_resolver(link)
        if adapter is not None and link.provider_reference_id:
            if not adapter.cancel(link.provider_reference_id, reference=link.id):
                raise ProviderRejected(f"{link.provider} can no longer cancel this payment")
        self.engine.apply_provider_event(self.engine.synthesized_event(link, CanonicalStatus.CANCELLED, "owner"))
        return self.store.get(link_id)

    def delete_payment_link(self, link_id: str, owner_id: str) -> None:
        self.get_payment_link(link_id, owner_id)
        self.store.delete(link_id)
