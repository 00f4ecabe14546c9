"""PayPal wallet via Orders v2.

The provider reference is the order id; the link id rides along as the
purchase unit's `custom_id`. Capture happens on the buyer return path, outside
this service, so an approved-but-uncaptured order is still in progress.
"""

import zlib
from collections.abc import Mapping
from typing import Any

from paylink.common.config import settings
from paylink.common.currency import to_decimal_string, to_minor_units
from paylink.common.errors import MalformedWebhook, ProviderRejected, ProviderUnavailable
from paylink.providers.base import (
    CanonicalStatus,
    ChargeResult,
    Provider,
    ProviderAdapter,
    ProviderEvent,
    ReturnUrls,
    StatusSnapshot,
    first_item,
    hmac_sha256_b64,
    nested,
    signatures_match,
    text_or_none,
)

CAPTURE_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": CanonicalStatus.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": CanonicalStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": CanonicalStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": CanonicalStatus.REFUNDED,
}

# Orders in these states have not taken money and simply lapse when abandoned.
OPEN_ORDER_STATES = {"CREATED", "SAVED", "APPROVED", "PAYER_ACTION_REQUIRED"}


def _amount(money: Any) -> tuple[int | None, str | None]:
    money = nested(money)
    currency = text_or_none(money.get("currency_code"))
    if not currency:
        return None, None
    try:
        return to_minor_units(money.get("value"), currency), currency
    except (ArithmeticError, ValueError) as exc:
        raise MalformedWebhook(f"unreadable amount value: {money.get('value')!r}") from exc


class PayPalAdapter(ProviderAdapter):
    provider = Provider.PAYPAL
    supported_currencies = frozenset({"JPY", "USD", "EUR", "GBP", "AUD", "CAD"})
    poll_grace_seconds = 60
    live_base_url = "https://api-m.paypal.com"
    sandbox_base_url = "https://api-m.sandbox.paypal.com"

    def __init__(self, *args, webhook_id: str | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self._access_token: str | None = None

    def _token(self) -> str:
        if self._access_token is None:
            response = self._request(
                "oauth_token",
                "POST",
                "/v1/oauth2/token",
                auth=(self.credential("client_id"), self.credential("client_secret")),
                data={"grant_type": "client_credentials"},
            )
            token = self._json(response).get("access_token")
            if not token:
                raise ProviderUnavailable("paypal returned no access token")
            self._access_token = token
        return self._access_token

    def _auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token()}"}

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
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference,
                    "custom_id": reference,
                    "description": description or "Payment",
                    "amount": {"currency_code": currency.upper(), "value": to_decimal_string(amount, currency)},
                }
            ],
            "application_context": {
                "return_url": return_urls.success_url,
                "cancel_url": return_urls.cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        response = self._request(
            "create_charge",
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={**self._auth(), "PayPal-Request-Id": f"link-{reference}"},
        )
        order = self._json(response)
        approve = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not order.get("id") or not approve:
            raise ProviderRejected("paypal order has no approval link")
        return ChargeResult(provider_reference_id=order["id"], pay_url=approve)

    def _get_order(self, order_id: str, operation: str) -> dict[str, Any]:
        return self._json(self._request(operation, "GET", f"/v2/checkout/orders/{order_id}", headers=self._auth()))

    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        order = self._get_order(provider_reference_id, "get_status")
        state = order.get("status")
        if state == "VOIDED":
            return StatusSnapshot(CanonicalStatus.CANCELLED, provider_transaction_id=f"{provider_reference_id}:voided")
        if state != "COMPLETED":
            return StatusSnapshot(CanonicalStatus.IGNORED)
        unit = first_item(order.get("purchase_units"))
        capture = first_item(nested(unit.get("payments")).get("captures"))
        if not capture:
            return StatusSnapshot(CanonicalStatus.IGNORED)
        amount, currency = _amount(capture.get("amount"))
        status = {
            "COMPLETED": CanonicalStatus.SUCCEEDED,
            "DECLINED": CanonicalStatus.FAILED,
            "FAILED": CanonicalStatus.FAILED,
        }.get(capture.get("status"), CanonicalStatus.IGNORED)
        return StatusSnapshot(status, provider_transaction_id=capture.get("id"), amount=amount, currency=currency)

    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        # Orders v2 has no void for capture-intent orders; an open order is left to lapse.
        order = self._get_order(provider_reference_id, "cancel")
        return order.get("status") in OPEN_ORDER_STATES

    def verify_credentials(self) -> bool:
        try:
            self._token()
        except ProviderRejected:
            return False
        return True

    def extract_signature(self, headers: Mapping[str, str]) -> str:
        lowered = {k.lower(): v for k, v in headers.items()}
        parts = [
            lowered.get("paypal-transmission-id", ""),
            lowered.get("paypal-transmission-time", ""),
            lowered.get("paypal-transmission-sig", ""),
        ]
        if not all(parts):
            return ""
        return "|".join(parts)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """HMAC-SHA256 (base64) over `transmission_id|transmission_time|webhook_id|crc32(body)`."""

        if not signature_header or not secret:
            return False
        parts = signature_header.split("|")
        if len(parts) != 3:
            return False
        transmission_id, transmission_time, provided = parts
        message = f"{transmission_id}|{transmission_time}|{self.webhook_id}|{zlib.crc32(raw_body)}"
        return signatures_match(hmac_sha256_b64(secret, message.encode("utf-8")), provided)

    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        event = self.load_body(raw_body)
        event_type = str(event.get("event_type") or "")
        resource = event.get("resource")
        if not isinstance(resource, dict):
            return self.ignored(event_type, event)

        if event_type in CAPTURE_EVENTS:
            related = nested(nested(resource.get("supplementary_data")).get("related_ids"))
            amount, currency = _amount(resource.get("amount"))
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=CAPTURE_EVENTS[event_type],
                provider_reference_id=text_or_none(related.get("order_id")),
                link_reference=text_or_none(resource.get("custom_id")),
                provider_transaction_id=text_or_none(resource.get("id")),
                amount=amount,
                currency=currency,
                raw=event,
            )

        if event_type == "CHECKOUT.ORDER.COMPLETED":
            unit = first_item(resource.get("purchase_units"))
            capture = first_item(nested(unit.get("payments")).get("captures"))
            if not capture:
                return self.ignored(event_type, event)
            amount, currency = _amount(capture.get("amount"))
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=CanonicalStatus.SUCCEEDED,
                provider_reference_id=text_or_none(resource.get("id")),
                link_reference=text_or_none(unit.get("custom_id")),
                provider_transaction_id=text_or_none(capture.get("id")),
                amount=amount,
                currency=currency,
                raw=event,
            )

        if event_type == "CHECKOUT.ORDER.VOIDED":
            unit = first_item(resource.get("purchase_units"))
            order_id = text_or_none(resource.get("id"))
            return ProviderEvent(
                provider=self.provider.value,
                event_type=event_type,
                canonical_status=CanonicalStatus.CANCELLED,
                provider_reference_id=order_id,
                link_reference=text_or_none(unit.get("custom_id")),
                provider_transaction_id=f"{order_id}:voided",
                raw=event,
            )

        # CHECKOUT.ORDER.APPROVED, PAYMENT.CAPTURE.PENDING and anything else.
        return self.ignored(event_type, event)
