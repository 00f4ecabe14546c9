"""Stripe card processor via Checkout Sessions.

The link's provider reference is the Checkout Session id. The link id travels
as `client_reference_id` and as metadata on both the session and its payment
intent, so payment intent events can still be matched to a link.
"""

import time
from collections.abc import Mapping
from typing import Any

from paylink.common.errors import ProviderRejected
from paylink.providers.base import (
    CanonicalStatus,
    ChargeResult,
    Provider,
    ProviderAdapter,
    ProviderEvent,
    ReturnUrls,
    StatusSnapshot,
    amount_or_none,
    hmac_sha256_hex,
    nested,
    signatures_match,
    text_or_none,
)

SESSION_EVENTS = {
    "checkout.session.completed": CanonicalStatus.SUCCEEDED,
    "checkout.session.async_payment_succeeded": CanonicalStatus.SUCCEEDED,
    "checkout.session.async_payment_failed": CanonicalStatus.FAILED,
    "checkout.session.expired": CanonicalStatus.EXPIRED,
}

PAYMENT_INTENT_EVENTS = {
    "payment_intent.succeeded": CanonicalStatus.SUCCEEDED,
    "payment_intent.payment_failed": CanonicalStatus.FAILED,
    "payment_intent.canceled": CanonicalStatus.CANCELLED,
}


class StripeAdapter(ProviderAdapter):
    provider = Provider.STRIPE
    supported_currencies = frozenset({"JPY", "USD", "EUR", "GBP", "AUD", "CAD", "SGD"})
    signature_header = "stripe-signature"
    poll_grace_seconds = 30
    live_base_url = "https://api.stripe.com"
    sandbox_base_url = "https://api.stripe.com"
    signature_tolerance_seconds = 300

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.credential('secret_key')}"}

    def create_charge(
        self,
        amount: int,
        currency: str,
        reference: str,
        return_urls: ReturnUrls,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChargeResult:
        self.ensure_currency(currency)
        form = {
            "mode": "payment",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency.lower(),
            # Stripe amounts are already in minor units, JPY included.
            "line_items[0][price_data][unit_amount]": str(amount),
            "line_items[0][price_data][product_data][name]": description or "Payment",
            "success_url": return_urls.success_url,
            "cancel_url": return_urls.cancel_url,
            "client_reference_id": reference,
            "metadata[link_id]": reference,
            "payment_intent_data[metadata][link_id]": reference,
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)
        response = self._request(
            "create_charge",
            "POST",
            "/v1/checkout/sessions",
            data=form,
            headers={**self._auth(), "Idempotency-Key": f"link-{reference}"},
        )
        session = self._json(response)
        if not session.get("id") or not session.get("url"):
            raise ProviderRejected("stripe returned a session without id or url")
        return ChargeResult(provider_reference_id=session["id"], pay_url=session["url"])

    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        response = self._request(
            "get_status", "GET", f"/v1/checkout/sessions/{provider_reference_id}", headers=self._auth()
        )
        session = self._json(response)
        amount = session.get("amount_total")
        currency = (session.get("currency") or "").upper() or None
        if session.get("status") == "complete" and session.get("payment_status") in ("paid", "no_payment_required"):
            return StatusSnapshot(
                CanonicalStatus.SUCCEEDED,
                provider_transaction_id=session.get("payment_intent") or provider_reference_id,
                amount=amount,
                currency=currency,
            )
        if session.get("status") == "expired":
            return StatusSnapshot(
                CanonicalStatus.EXPIRED,
                provider_transaction_id=f"{provider_reference_id}:expired",
                amount=amount,
                currency=currency,
            )
        return StatusSnapshot(CanonicalStatus.IGNORED)

    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        self._request("cancel", "POST", f"/v1/checkout/sessions/{provider_reference_id}/expire", headers=self._auth())
        return True

    def verify_credentials(self) -> bool:
        try:
            self._request("verify_credentials", "GET", "/v1/balance", headers=self._auth())
        except ProviderRejected:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """Check a `t=...,v1=...` header against HMAC-SHA256 of `"{t}.{body}"`."""

        if not signature_header or not secret:
            return False
        timestamp = None
        candidates = []
        for item in signature_header.split(","):
            key, _, value = item.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1" and value:
                candidates.append(value)
        if timestamp is None or not timestamp.isascii() or not candidates:
            return False
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - signed_at) > self.signature_tolerance_seconds:
            return False
        expected = hmac_sha256_hex(secret, timestamp.encode("ascii") + b"." + raw_body)
        return any(signatures_match(expected, candidate) for candidate in candidates)

    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        event = self.load_body(raw_body)
        event_type = str(event.get("type") or "")
        obj = nested(event.get("data")).get("object")
        if not isinstance(obj, dict):
            return self.ignored(event_type, event)
        metadata = nested(obj.get("metadata"))
        currency = (text_or_none(obj.get("currency")) or "").upper() or None

        if event_type in SESSION_EVENTS:
            status = SESSION_EVENTS[event_type]
            if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
                # Delayed methods: the async_payment_* event carries the outcome.
                return self.ignored(event_type, event)
            session_id = text_or_none(obj.get("id"))
            if status is CanonicalStatus.SUCCEEDED:
                txn_id = text_or_none(obj.get("payment_intent")) or session_id
            else:
                txn_id = f"{session_id}:{status.value}"
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=status,
                provider_reference_id=session_id,
                link_reference=text_or_none(obj.get("client_reference_id")) or text_or_none(metadata.get("link_id")),
                provider_transaction_id=txn_id,
                amount=amount_or_none(obj.get("amount_total")),
                currency=currency,
                raw=event,
            )

        if event_type in PAYMENT_INTENT_EVENTS:
            status = PAYMENT_INTENT_EVENTS[event_type]
            intent_id = text_or_none(obj.get("id"))
            txn_id = intent_id if status is CanonicalStatus.SUCCEEDED else f"{intent_id}:{status.value}"
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=status,
                link_reference=text_or_none(metadata.get("link_id")),
                provider_transaction_id=txn_id,
                amount=amount_or_none(obj.get("amount_received") or obj.get("amount")),
                currency=currency,
                raw=event,
            )

        if event_type == "charge.refunded":
            charge_id = text_or_none(obj.get("payment_intent")) or text_or_none(obj.get("id"))
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=CanonicalStatus.REFUNDED,
                link_reference=text_or_none(metadata.get("link_id")),
                provider_transaction_id=f"{charge_id}:refunded",
                amount=amount_or_none(obj.get("amount_refunded")),
                currency=currency,
                raw=event,
            )

        return self.ignored(event_type, event)
