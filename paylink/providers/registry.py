"""Provider name -> adapter class lookup."""

from collections.abc import Mapping
from typing import Any

import httpx

from paylink.common.errors import NotFound
from paylink.providers.base import Provider, ProviderAdapter
from paylink.providers.fincode import FincodeAdapter
from paylink.providers.paypal import PayPalAdapter
from paylink.providers.paypay import PayPayAdapter
from paylink.providers.square import SquareAdapter
from paylink.providers.stripe import StripeAdapter

ADAPTERS: dict[Provider, type[ProviderAdapter]] = {
    Provider.STRIPE: StripeAdapter,
    Provider.PAYPAL: PayPalAdapter,
    Provider.SQUARE: SquareAdapter,
    Provider.PAYPAY: PayPayAdapter,
    Provider.FINCODE: FincodeAdapter,
}


def parse_provider(name: str) -> Provider:
    try:
        return Provider(str(name).lower())
    except ValueError as exc:
        raise NotFound(f"unknown provider: {name}") from exc


def get_adapter(
    provider: str | Provider,
    credentials: Mapping[str, Any] | None = None,
    is_test_mode: bool = True,
    client: httpx.Client | None = None,
) -> ProviderAdapter:
    """Build an adapter; without credentials it can only verify and parse webhooks."""

    key = provider if isinstance(provider, Provider) else parse_provider(provider)
    return ADAPTERS[key](credentials, is_test_mode=is_test_mode, client=client)
