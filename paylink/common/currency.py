"""Minor-unit helpers for provider wire formats that use decimal strings."""

from decimal import ROUND_HALF_UP, Decimal

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP"})

# Smallest chargeable amount in minor units; anything not listed uses the default.
MINIMUM_AMOUNTS = {"JPY": 50, "USD": 50, "EUR": 50, "GBP": 30}
DEFAULT_MINIMUM_AMOUNT = 50


def exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_decimal_string(amount: int, currency: str) -> str:
    """1000 JPY -> "1000", 1050 USD -> "10.50"."""

    places = exponent(currency)
    if places == 0:
        return str(amount)
    value = Decimal(amount).scaleb(-places)
    return str(value.quantize(Decimal(1).scaleb(-places)))


def to_minor_units(value: str | int | float | None, currency: str) -> int | None:
    """Inverse of `to_decimal_string`; tolerates missing values."""

    if value is None or value == "":
        return None
    scaled = Decimal(str(value)).scaleb(exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def minimum_amount(currency: str) -> int:
    return MINIMUM_AMOUNTS.get(currency.upper(), DEFAULT_MINIMUM_AMOUNT)
