"""Provider adapter capability interface and the canonical event shapes.

Every provider integration translates its own wire format into the types in
this module. Nothing outside `paylink.providers` knows how a given provider
names its statuses or which identifier it echoes back in notifications.
"""

import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

import httpx

from paylink.common import state_machine
from paylink.common.config import settings
from paylink.common.errors import MalformedWebhook, ProviderRejected, ProviderUnavailable
from paylink.common.logging import logger
from paylink.common.metrics import provider_call_seconds, provider_errors_total
from paylink.common.tracing import provider_span


class Provider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SQUARE = "square"
    PAYPAY = "paypay"
    FINCODE = "fincode"


class CanonicalStatus(str, Enum):
    """Provider-neutral outcome of one provider event."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    # In-progress or irrelevant vocabulary: acknowledged, never applied.
    IGNORED = "ignored"

    @property
    def link_status(self) -> str | None:
        """PaymentLink status this outcome drives, or None when it drives none."""

        return _LINK_STATUS.get(self)

    @property
    def transaction_status(self) -> str | None:
        return _TRANSACTION_STATUS.get(self)


_LINK_STATUS = {
    CanonicalStatus.SUCCEEDED: state_machine.SUCCEEDED,
    CanonicalStatus.FAILED: state_machine.FAILED,
    CanonicalStatus.CANCELLED: state_machine.CANCELLED,
    CanonicalStatus.EXPIRED: state_machine.EXPIRED,
}

_TRANSACTION_STATUS = {
    CanonicalStatus.SUCCEEDED: state_machine.TXN_COMPLETED,
    CanonicalStatus.FAILED: state_machine.TXN_FAILED,
    CanonicalStatus.CANCELLED: state_machine.TXN_CANCELLED,
    CanonicalStatus.EXPIRED: state_machine.TXN_CANCELLED,
    CanonicalStatus.REFUNDED: state_machine.TXN_REFUNDED,
}


def nested(value: Any) -> dict[str, Any]:
    """A nested webhook object, or an empty one when the field has any other shape."""

    return value if isinstance(value, dict) else {}


def first_item(value: Any) -> dict[str, Any]:
    if isinstance(value, list) and value:
        return nested(value[0])
    return {}


def text_or_none(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def amount_or_none(value: Any) -> int | None:
    """Integer minor units from a webhook field; other shapes are a malformed body."""

    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedWebhook(f"amount is not an integer: {value!r}")
    return value


@dataclass
class ProviderEvent:
    """A provider notification (or synthesized poll result) in canonical form.

    `provider_reference_id` is the provider's own id for the charge/session;
    `link_reference` is our link id when the provider echoes it back. Either
    may be missing depending on the provider and event type.
    """

    provider: str
    event_type: str
    canonical_status: CanonicalStatus
    provider_reference_id: str | None = None
    link_reference: str | None = None
    provider_transaction_id: str | None = None
    amount: int | None = None
    currency: str | None = None
    source: str = "webhook"
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ReturnUrls:
    success_url: str
    cancel_url: str


@dataclass
class ChargeResult:
    provider_reference_id: str
    pay_url: str


@dataclass
class StatusSnapshot:
    """Result of polling a provider; IGNORED means still in progress."""

    canonical_status: CanonicalStatus
    provider_transaction_id: str | None = None
    amount: int | None = None
    currency: str | None = None


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def hmac_sha256_b64(secret: str, message: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()).decode("ascii")


def signatures_match(expected: str, provided: str) -> bool:
    """Constant-time comparison of two signature strings."""

    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


class ProviderAdapter(ABC):
    """Capability set every provider integration implements.

    Adapters are stateless apart from per-instance caches (an OAuth token, a
    lazily created HTTP client). They can be built without credentials for the
    webhook path, which only needs signature verification and parsing.
    """

    provider: Provider
    supported_currencies: frozenset[str] = frozenset()
    signature_header: str = ""
    # Seconds after creation before a client poll may call the provider.
    poll_grace_seconds: int = 60
    live_base_url: str = ""
    sandbox_base_url: str = ""

    def __init__(
        self,
        credentials: Mapping[str, Any] | None = None,
        is_test_mode: bool = True,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self.credentials = dict(credentials or {})
        self.is_test_mode = is_test_mode
        self._client = client
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    @property
    def base_url(self) -> str:
        return self.sandbox_base_url if self.is_test_mode else self.live_base_url

    @property
    def http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def credential(self, name: str) -> str:
        value = self.credentials.get(name)
        if not value:
            raise ProviderRejected(f"{self.provider.value} credential '{name}' is not configured")
        return str(value)

    def ensure_currency(self, currency: str) -> None:
        if currency.upper() not in self.supported_currencies:
            raise ProviderRejected(f"{self.provider.value} does not support currency {currency.upper()}")

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        accept: tuple[int, ...] = (),
        **kwargs,
    ) -> httpx.Response:
        """Issue one provider HTTP call and map failures to the error taxonomy.

        Timeouts, transport errors, 429 and 5xx are transient; any other 4xx
        (outside `accept`) means the provider refuses the request as-is.
        """

        labels = {"service": settings.service_name, "provider": self.provider.value, "operation": operation}
        start = perf_counter()
        with provider_span(self.provider.value, operation) as span:
            try:
                response = self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
            except httpx.TimeoutException as exc:
                provider_errors_total.labels(**labels, error_type="timeout").inc()
                raise ProviderUnavailable(f"{self.provider.value} {operation} timed out") from exc
            except httpx.TransportError as exc:
                provider_errors_total.labels(**labels, error_type="transport").inc()
                raise ProviderUnavailable(f"{self.provider.value} {operation} transport error") from exc
            finally:
                provider_call_seconds.labels(**labels).observe(max(0.0, perf_counter() - start))
            span.set_attribute("http.status_code", response.status_code)

        status = response.status_code
        if status in accept or status < 400:
            return response
        if status == 429 or status >= 500:
            provider_errors_total.labels(**labels, error_type=f"http_{status}").inc()
            raise ProviderUnavailable(f"{self.provider.value} {operation} returned {status}", status_code=status)
        provider_errors_total.labels(**labels, error_type=f"http_{status}").inc()
        logger.warning("provider rejected provider=%s operation=%s status=%s", self.provider.value, operation, status)
        raise ProviderRejected(
            f"{self.provider.value} {operation} rejected with {status}",
            status_code=status,
            provider_code=_error_code(response),
        )

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(f"{self.provider.value} returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(f"{self.provider.value} returned an unexpected response shape")
        return data

    @staticmethod
    def load_body(raw_body: bytes) -> dict[str, Any]:
        """Decode an already-authenticated webhook body."""

        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedWebhook("webhook body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise MalformedWebhook("webhook body is not a JSON object")
        return data

    def extract_signature(self, headers: Mapping[str, str]) -> str:
        """Pull the signature material out of inbound request headers."""

        lowered = {k.lower(): v for k, v in headers.items()}
        return lowered.get(self.signature_header, "")

    def ignored(self, event_type: str, data: dict[str, Any]) -> ProviderEvent:
        return ProviderEvent(
            provider=self.provider.value,
            event_type=event_type,
            canonical_status=CanonicalStatus.IGNORED,
            raw=data,
        )

    @abstractmethod
    def create_charge(
        self,
        amount: int,
        currency: str,
        reference: str,
        return_urls: ReturnUrls,
        description: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChargeResult:
        """Open a payable session for `amount` minor units of `currency`."""

    @abstractmethod
    def get_status(
        self,
        provider_reference_id: str,
        reference: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StatusSnapshot:
        """Poll the provider for the current outcome of a charge."""

    @abstractmethod
    def cancel(self, provider_reference_id: str, reference: str | None = None) -> bool:
        """Stop the charge from being payable. False when it can no longer be stopped."""

    @abstractmethod
    def verify_credentials(self) -> bool:
        """Make one cheap authenticated call; False when the provider rejects the credentials."""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """Authenticate a raw webhook body. Must not parse the body."""

    @abstractmethod
    def parse_webhook_event(self, raw_body: bytes) -> ProviderEvent:
        """Map an authenticated webhook body to a canonical event.

        Total over event types: unknown or in-progress vocabulary maps to
        `CanonicalStatus.IGNORED`. Only an undecodable body raises.
        """


def _error_code(response: httpx.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("code") or error.get("type")
    if isinstance(error, str):
        return error
    errors = data.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return errors[0].get("code")
    result_info = data.get("resultInfo")
    if isinstance(result_info, dict):
        return result_info.get("code")
    return data.get("name")
