"""Inbound provider webhooks.

Order matters: the signature is checked against the raw bytes before the body
is parsed at all. Past that point every event is either applied, deduplicated
or acknowledged as irrelevant; only a store failure asks the provider to
redeliver.
"""

from collections.abc import Mapping

from sqlalchemy import exc as sa_exc

from paylink.common.config import settings
from paylink.common.errors import MalformedWebhook, NotFound
from paylink.common.logging import log_context, logger
from paylink.common.metrics import webhook_events_total
from paylink.providers.registry import get_adapter, parse_provider
from paylink.services.links.reconciliation import ReconciliationEngine


class WebhookReceiver:
    def __init__(self, engine: ReconciliationEngine, secrets=None, adapter_factory=get_adapter, service_name="paylink"):
        self.engine = engine
        self.secrets = secrets or settings.webhook_secrets
        self.adapter_factory = adapter_factory
        self.service_name = service_name

    def _done(self, provider: str, outcome: str, status_code: int) -> tuple[int, dict]:
        webhook_events_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()
        return status_code, {"outcome": outcome}

    def handle(self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]) -> tuple[int, dict]:
        """Process one webhook call; returns the HTTP status and a small response body."""

        try:
            provider = parse_provider(provider_name)
        except NotFound:
            return 404, {"outcome": "unknown_provider"}

        adapter = self.adapter_factory(provider)
        secret = self.secrets().get(provider.value)
        if not secret:
            logger.error("webhook secret not configured provider=%s", provider.value)
            return self._done(provider.value, "unconfigured", 401)

        signature = adapter.extract_signature(headers)
        if not adapter.verify_webhook_signature(raw_body, signature, secret):
            logger.warning("webhook signature rejected provider=%s", provider.value)
            return self._done(provider.value, "invalid_signature", 401)

        try:
            event = adapter.parse_webhook_event(raw_body)
        except MalformedWebhook as exc:
            logger.warning("malformed webhook body provider=%s error=%s", provider.value, exc.message)
            return self._done(provider.value, "malformed", 200)
        except Exception:
            logger.exception("webhook parse error provider=%s", provider.value)
            return self._done(provider.value, "error", 200)

        with log_context(provider=provider.value, event_id=event.provider_transaction_id):
            try:
                outcome = self.engine.apply_provider_event(event)
            except sa_exc.SQLAlchemyError as exc:
                logger.error("webhook store failure provider=%s error=%s", provider.value, type(exc).__name__)
                return self._done(provider.value, "store_unavailable", 503)
            except Exception:
                # Acknowledged; the stack trace is the review signal.
                logger.exception(
                    "webhook processing error provider=%s event_type=%s", provider.value, event.event_type
                )
                return self._done(provider.value, "error", 200)
        return self._done(provider.value, outcome.value, 200)
