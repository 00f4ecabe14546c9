"""PayPay dynamic QR codes (`/v2/codes`).

The provider reference is the QR `codeId`; status lookups are keyed on the
merchant payment id, which is our link id.
"""

import base64
import hashlib
import json
import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

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
    hmac_sha256_hex,
    nested,
    signatures_match,
    text_or_none,
)

WEBHOOK_EVENTS = {
    "payment.completed": CanonicalStatus.SUCCEEDED,
    "payment.failed": CanonicalStatus.FAILED,
    "payment.canceled": CanonicalStatus.CANCELLED,
    "payment.cancelled": CanonicalStatus.CANCELLED,
    "payment.expired": CanonicalStatus.EXPIRED,
    "payment.refunded": CanonicalStatus.REFUNDED,
}

PAYMENT_STATES = {
    "COMPLETED": CanonicalStatus.SUCCEEDED,
    "FAILED": CanonicalStatus.FAILED,
    "CANCELED": CanonicalStatus.CANCELLED,
    "EXPIRED": CanonicalStatus.EXPIRED,
    "REFUNDED": CanonicalStatus.REFUNDED,
}


def _transaction_id(status: CanonicalStatus, payment_id: str | None, merchant_payment_id: str | None) -> str:
    if status is CanonicalStatus.SUCCEEDED and payment_id:
        return payment_id
    return f"{payment_id or merchant_payment_id}:{status.value}"


class PayPayAdapter(ProviderAdapter):
    provider = Provider.PAYPAY
    supported_currencies = frozenset({"JPY"})
    signature_header = "x-paypay-signature"
    poll_grace_seconds = 30
    live_base_url = "https://api.paypay.ne.jp"
    sandbox_base_url = "https://stg-api.sandbox.paypay.ne.jp"

    def _headers(self, method: str, path: str, body: bytes = b"") -> dict[str, str]:
        """OPA-Auth HMAC header for one request."""

        nonce = uuid4().hex[:8]
        epoch = str(int(time.time()))
        if body:
            content_type = "application/json"
            body_hash = base64.b64encode(hashlib.md5(content_type.encode("utf-8") + body).digest()).decode("ascii")
        else:
            content_type = "empty"
            body_hash = "empty"
        message = "\n".join([path, method, nonce, epoch, content_type, body_hash]).encode("utf-8")
        mac = hmac_sha256_b64(self.credential("api_secret"), message)
        headers = {
            "Authorization": f"hmac OPA-Auth:{self.credential('api_key')}:{mac}:{nonce}:{epoch}:{body_hash}",
            "X-ASSUME-MERCHANT": self.credential("merchant_id"),
        }
        if body:
            headers["Content-Type"] = content_type
        return headers

    def _call(self, operation: str, method: str, path: str, payload: dict | None = None, accept: tuple[int, ...] = ()):
        body = b""
        if payload is not None:
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return self._request(
            operation,
            method,
            path,
            accept=accept,
            content=body or None,
            headers=self._headers(method, path, body),
        )

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
        payload = {
            "merchantPaymentId": reference,
            "amount": {"amount": amount, "currency": "JPY"},
            "codeType": "ORDER_QR",
            "orderDescription": description or "Payment",
            "isAuthorization": False,
            "redirectUrl": return_urls.success_url,
            "redirectType": "WEB_LINK",
            "requestedAt": int(time.time()),
        }
        data = self._json(self._call("create_charge", "POST", "/v2/codes", payload))
        result_code = (data.get("resultInfo") or {}).get("code")
        code = data.get("data") or {}
        if result_code != "SUCCESS" or not code.get("codeId") or not code.get("url"):
            raise ProviderRejected(f"paypay code creation failed: {result_code}", provider_code=result_code)
        return ChargeResult(provider_reference_id=code["codeId"], pay_url=code["url"])

    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        if not reference:
            raise ProviderRejected("paypay status lookup needs the merchant payment id")
        response = self._call("get_status", "GET", f"/v2/codes/payments/{reference}", accept=(404,))
        if response.status_code == 404:
            # No payment has been attempted against the code yet.
            return StatusSnapshot(CanonicalStatus.IGNORED)
        payment = self._json(response).get("data") or {}
        status = PAYMENT_STATES.get(payment.get("status"), CanonicalStatus.IGNORED)
        if status is CanonicalStatus.IGNORED:
            return StatusSnapshot(status)
        money = payment.get("amount") or {}
        return StatusSnapshot(
            status,
            provider_transaction_id=_transaction_id(status, payment.get("paymentId"), reference),
            amount=money.get("amount"),
            currency=money.get("currency"),
        )

    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        self._call("cancel", "DELETE", f"/v2/codes/{provider_reference_id}")
        return True

    def verify_credentials(self) -> bool:
        # Unknown merchant payment ids answer 404 once authentication has passed.
        try:
            self._call("verify_credentials", "GET", f"/v2/codes/payments/{uuid4().hex}", accept=(404,))
        except ProviderRejected:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        if not signature_header or not secret:
            return False
        return signatures_match(hmac_sha256_hex(secret, raw_body), signature_header)

    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        event = self.load_body(raw_body)
        event_type = str(event.get("eventType") or "")
        data = event.get("data")
        if event_type not in WEBHOOK_EVENTS or not isinstance(data, dict):
            return self.ignored(event_type, event)
        status = WEBHOOK_EVENTS[event_type]
        merchant_payment_id = text_or_none(data.get("merchantPaymentId"))
        payment_id = text_or_none(data.get("paymentId"))
        txn_id = _transaction_id(status, payment_id, merchant_payment_id)
        money = nested(data.get("amount"))
        return ProviderEvent(
            provider=self.provider.value,
            event_type=event_type,
            canonical_status=status,
            provider_reference_id=text_or_none(data.get("codeId")),
            link_reference=merchant_payment_id,
            provider_transaction_id=txn_id,
            amount=amount_or_none(money.get("amount")),
            currency=text_or_none(money.get("currency")),
            raw=event,
        )
