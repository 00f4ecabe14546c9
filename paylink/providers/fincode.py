"""fincode card, convenience store and bank transfer payments.

fincode lets the merchant choose the order id, so the link id is used as the
fincode payment id and doubles as the provider reference. The payment method
comes from link metadata (`pay_method`: card, konbini or bank_transfer).
"""

from collections.abc import Mapping
from typing import Any

from paylink.common.config import settings
from paylink.common.errors import ProviderRejected, ValidationFailed
from paylink.providers.base import (
    CanonicalStatus,
    ChargeResult,
    Provider,
    ProviderAdapter,
    ProviderEvent,
    ReturnUrls,
    StatusSnapshot,
    hmac_sha256_hex,
    signatures_match,
    text_or_none,
)

PAY_TYPES = {
    "card": "Card",
    "konbini": "Konbini",
    "bank_transfer": "Virtualaccount",
}

WEBHOOK_EVENTS = {
    "payment.captured": CanonicalStatus.SUCCEEDED,
    "payment.konbini.completed": CanonicalStatus.SUCCEEDED,
    "konbini.completed": CanonicalStatus.SUCCEEDED,
    "payment.failed": CanonicalStatus.FAILED,
    "payment.canceled": CanonicalStatus.CANCELLED,
    "payment.konbini.expired": CanonicalStatus.EXPIRED,
    "konbini.expired": CanonicalStatus.EXPIRED,
    "payment.refunded": CanonicalStatus.REFUNDED,
}

PAYMENT_STATES = {
    "CAPTURED": CanonicalStatus.SUCCEEDED,
    "FAILED": CanonicalStatus.FAILED,
    "CANCELED": CanonicalStatus.CANCELLED,
    "EXPIRED": CanonicalStatus.EXPIRED,
}


def pay_type_for(metadata: Mapping[str, Any] | None) -> str:
    method = str((metadata or {}).get("pay_method") or "card")
    if method not in PAY_TYPES:
        raise ValidationFailed(f"unsupported fincode pay_method: {method}")
    return PAY_TYPES[method]


class FincodeAdapter(ProviderAdapter):
    provider = Provider.FINCODE
    supported_currencies = frozenset({"JPY"})
    signature_header = "x-fincode-signature"
    poll_grace_seconds = 120
    live_base_url = "https://api.fincode.jp"
    sandbox_base_url = "https://api.test.fincode.jp"

    def _headers(self) -> dict[str, str]:
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
        pay_type = pay_type_for(metadata)
        body = {
            "pay_type": pay_type,
            "job_code": "CAPTURE",
            "id": reference,
            "amount": str(amount),
            "client_field_1": reference,
        }
        payment = self._json(
            self._request("create_charge", "POST", "/v1/payments", json=body, headers=self._headers())
        )
        payment_id = payment.get("id") or reference
        if pay_type == "Card":
            session = self._json(
                self._request(
                    "create_session",
                    "POST",
                    "/v1/secure/sessions",
                    json={"payment_id": payment_id, "return_url": return_urls.success_url},
                    headers=self._headers(),
                )
            )
            pay_url = session.get("redirect_url")
            if not pay_url:
                raise ProviderRejected("fincode session has no redirect url")
        else:
            # Konbini and bank transfer hand the buyer an instruction page instead of a hosted form.
            method = "konbini" if pay_type == "Konbini" else "bank-transfer"
            pay_url = f"{settings.public_base_url}/payment/{method}?payment_id={payment_id}"
        return ChargeResult(provider_reference_id=payment_id, pay_url=pay_url)

    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        response = self._request(
            "get_status",
            "GET",
            f"/v1/payments/{provider_reference_id}",
            params={"pay_type": pay_type_for(metadata)},
            headers=self._headers(),
        )
        payment = self._json(response)
        status = PAYMENT_STATES.get(str(payment.get("status") or "").upper(), CanonicalStatus.IGNORED)
        if status is CanonicalStatus.IGNORED:
            return StatusSnapshot(status)
        return StatusSnapshot(
            status,
            provider_transaction_id=_transaction_id(status, payment.get("access_id"), provider_reference_id),
            amount=_int_or_none(payment.get("amount")),
            currency="JPY",
        )

    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        self._request(
            "cancel", "PUT", f"/v1/payments/{provider_reference_id}/cancel", json={}, headers=self._headers()
        )
        return True

    def verify_credentials(self) -> bool:
        try:
            self._request("verify_credentials", "GET", "/v1/payments", params={"limit": 1}, headers=self._headers())
        except ProviderRejected:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        if not signature_header or not secret:
            return False
        return signatures_match(hmac_sha256_hex(secret, raw_body), signature_header)

    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        event = self.load_body(raw_body)
        event_type = str(event.get("event_type") or event.get("event") or "")
        data = event.get("data") or {}
        if event_type not in WEBHOOK_EVENTS or not isinstance(data, dict):
            # payment.authorized, konbini.pending and anything unknown.
            return self.ignored(event_type, event)
        status = WEBHOOK_EVENTS[event_type]
        payment_id = text_or_none(data.get("id")) or text_or_none(data.get("order_id"))
        return ProviderEvent(
            provider=self.provider.value,
            event_type=event_type,
            canonical_status=status,
            provider_reference_id=payment_id,
            link_reference=text_or_none(data.get("order_id")) or text_or_none(data.get("client_field_1")),
            provider_transaction_id=_transaction_id(status, text_or_none(data.get("access_id")), payment_id),
            amount=_int_or_none(data.get("amount")),
            currency=text_or_none(data.get("currency")) or "JPY",
            raw=event,
        )


def _transaction_id(status: CanonicalStatus, access_id: str | None, payment_id: str | None) -> str:
    if status is CanonicalStatus.SUCCEEDED:
        return access_id or f"{payment_id}:succeeded"
    return f"{payment_id}:{status.value}"


def _int_or_none(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None
