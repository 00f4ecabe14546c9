"""Credential shapes per provider and the provider-config API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from paylink.common.errors import ValidationFailed
from paylink.providers.base import Provider


class _Credentials(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class StripeCredentials(_Credentials):
    publishable_key: str = Field(min_length=1, pattern=r"^pk_")
    secret_key: str = Field(min_length=1, pattern=r"^(sk|rk)_")
    webhook_secret: str | None = None


class PayPalCredentials(_Credentials):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)


class SquareCredentials(_Credentials):
    application_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    location_id: str = Field(min_length=1)


class PayPayCredentials(_Credentials):
    merchant_id: str = Field(min_length=1)
    api_key: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)


class FincodeCredentials(_Credentials):
    shop_id: str = Field(min_length=1)
    secret_key: str = Field(min_length=1)
    public_key: str = Field(min_length=1)


CREDENTIAL_MODELS: dict[Provider, type[_Credentials]] = {
    Provider.STRIPE: StripeCredentials,
    Provider.PAYPAL: PayPalCredentials,
    Provider.SQUARE: SquareCredentials,
    Provider.PAYPAY: PayPayCredentials,
    Provider.FINCODE: FincodeCredentials,
}

# Fields that may be shown back to the owner; everything else stays sealed.
NON_SECRET_FIELDS: dict[Provider, tuple[str, ...]] = {
    Provider.STRIPE: ("publishable_key",),
    Provider.PAYPAL: ("client_id",),
    Provider.SQUARE: ("application_id", "location_id"),
    Provider.PAYPAY: ("merchant_id",),
    Provider.FINCODE: ("shop_id", "public_key"),
}


def validate_credentials(provider: Provider, credentials: dict[str, Any]) -> dict[str, Any]:
    """Check the credential shape for `provider`; error details name fields, never values."""

    try:
        model = CREDENTIAL_MODELS[provider].model_validate(credentials)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ValidationFailed(f"invalid {provider.value} credentials", fields=fields) from None
    return model.model_dump(exclude_none=True)


class ProviderConfigCreate(BaseModel):
    provider: Provider
    display_name: str = Field(min_length=1, max_length=100)
    credentials: dict[str, Any]
    is_test_mode: bool = True
    is_active: bool = True


class ProviderConfigUpdate(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=100)
    credentials: dict[str, Any] | None = None
    is_test_mode: bool | None = None
    is_active: bool | None = None


class ProviderConfigView(BaseModel):
    """Read model; never carries credential material."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    provider: str
    display_name: str
    is_test_mode: bool
    is_active: bool
    last_verified_at: datetime | None = None
    created_at: datetime | None = None


class VerifyResult(BaseModel):
    id: str
    valid: bool
    last_verified_at: datetime | None = None
