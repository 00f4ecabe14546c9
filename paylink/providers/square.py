"""Square online checkout payment links.

The provider reference is the order Square creates behind the payment link;
payment and refund notifications carry that order id.
"""

from collections.abc import Mapping
from typing import Any

from paylink.common.config import settings
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
    hmac_sha256_b64,
    nested,
    signatures_match,
    text_or_none,
)

PAYMENT_STATUSES = {
    "COMPLETED": CanonicalStatus.SUCCEEDED,
    "FAILED": CanonicalStatus.FAILED,
    "CANCELED": CanonicalStatus.CANCELLED,
}

SQUARE_VERSION = "2024-01-18"


class SquareAdapter(ProviderAdapter):
    provider = Provider.SQUARE
    supported_currencies = frozenset({"JPY", "USD", "CAD", "AUD", "GBP"})
    signature_header = "x-square-hmacsha256-signature"
    poll_grace_seconds = 60
    live_base_url = "https://connect.squareup.com"
    sandbox_base_url = "https://connect.squareupsandbox.com"

    def __init__(self, *args, notification_url: str | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.notification_url = (
            notification_url if notification_url is not None else settings.square_notification_url
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credential('access_token')}",
            "Square-Version": SQUARE_VERSION,
        }

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
        body = {
            "idempotency_key": reference,
            "description": description or "Payment",
            "order": {
                "location_id": self.credential("location_id"),
                "reference_id": reference,
                "line_items": [
                    {
                        "name": description or "Payment",
                        "quantity": "1",
                        # Square money amounts are minor units.
                        "base_price_money": {"amount": amount, "currency": currency.upper()},
                    }
                ],
            },
            "checkout_options": {"redirect_url": return_urls.success_url},
            "payment_note": reference,
        }
        response = self._request(
            "create_charge", "POST", "/v2/online-checkout/payment-links", json=body, headers=self._headers()
        )
        link = self._json(response).get("payment_link") or {}
        if not link.get("order_id") or not link.get("url"):
            raise ProviderRejected("square payment link has no order or url")
        return ChargeResult(provider_reference_id=link["order_id"], pay_url=link["url"])

    def _get_order(self, order_id: str, operation: str) -> dict[str, Any]:
        response = self._request(operation, "GET", f"/v2/orders/{order_id}", headers=self._headers())
        return self._json(response).get("order") or {}

    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        order = self._get_order(provider_reference_id, "get_status")
        total = order.get("total_money") or {}
        state = order.get("state")
        if state == "COMPLETED":
            tenders = order.get("tenders") or [{}]
            return StatusSnapshot(
                CanonicalStatus.SUCCEEDED,
                provider_transaction_id=tenders[0].get("payment_id") or tenders[0].get("id") or provider_reference_id,
                amount=total.get("amount"),
                currency=total.get("currency"),
            )
        if state == "CANCELED":
            return StatusSnapshot(
                CanonicalStatus.CANCELLED,
                provider_transaction_id=f"{provider_reference_id}:canceled",
                amount=total.get("amount"),
                currency=total.get("currency"),
            )
        return StatusSnapshot(CanonicalStatus.IGNORED)

    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        order = self._get_order(provider_reference_id, "cancel")
        if order.get("state") != "OPEN":
            return order.get("state") == "CANCELED"
        body = {
            "idempotency_key": f"cancel-{provider_reference_id}",
            "order": {
                "location_id": order.get("location_id") or self.credential("location_id"),
                "version": order.get("version"),
                "state": "CANCELED",
            },
        }
        self._request("cancel", "PUT", f"/v2/orders/{provider_reference_id}", json=body, headers=self._headers())
        return True

    def verify_credentials(self) -> bool:
        try:
            self._request(
                "verify_credentials",
                "GET",
                f"/v2/locations/{self.credential('location_id')}",
                headers=self._headers(),
            )
        except ProviderRejected:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """HMAC-SHA256 (base64) over the notification URL followed by the body."""

        if not signature_header or not secret:
            return False
        expected = hmac_sha256_b64(secret, self.notification_url.encode("utf-8") + raw_body)
        return signatures_match(expected, signature_header)

    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        event = self.load_body(raw_body)
        event_type = str(event.get("type") or "")
        obj = nested(event.get("data")).get("object")
        if not isinstance(obj, dict):
            return self.ignored(event_type, event)

        if event_type.startswith("payment.") and isinstance(obj.get("payment"), dict):
            payment = obj["payment"]
            status = PAYMENT_STATUSES.get(text_or_none(payment.get("status")), CanonicalStatus.IGNORED)
            if status is CanonicalStatus.IGNORED:
                return self.ignored(event_type, event)
            money = nested(payment.get("amount_money"))
            payment_id = text_or_none(payment.get("id"))
            txn_id = payment_id if status is CanonicalStatus.SUCCEEDED else f"{payment_id}:{status.value}"
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=status,
                provider_reference_id=text_or_none(payment.get("order_id")),
                link_reference=text_or_none(payment.get("reference_id")) or text_or_none(payment.get("note")),
                provider_transaction_id=txn_id,
                amount=amount_or_none(money.get("amount")),
                currency=text_or_none(money.get("currency")),
                raw=event,
            )

        if event_type.startswith("refund.") and isinstance(obj.get("refund"), dict):
            refund = obj["refund"]
            if refund.get("status") != "COMPLETED":
                return self.ignored(event_type, event)
            money = nested(refund.get("amount_money"))
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=CanonicalStatus.REFUNDED,
                provider_reference_id=text_or_none(refund.get("order_id")),
                provider_transaction_id=text_or_none(refund.get("id")),
                amount=amount_or_none(money.get("amount")),
                currency=text_or_none(money.get("currency")),
                raw=event,
            )

        return self.ignored(event_type, event)
