"""Currency and amount helpers."""

from decimal import ROUND_HALF_UP, Decimal

from merchant_billing.core.exceptions import ValidationError

# ISO 4217 minor-unit exponents for supported currencies
CURRENCY_MINOR_UNITS: dict[str, int] = {
    "AED": 2,
    "BHD": 3,
    "EGP": 2,
    "EUR": 2,
    "GBP": 2,
    "JOD": 3,
    "JPY": 0,
    "KWD": 3,
    "OMR": 3,
    "PKR": 2,
    "QAR": 2,
    "SAR": 2,
    "USD": 2,
    "ZAR": 2,
}


def is_supported_currency(currency: str) -> bool:
    return currency.upper() in CURRENCY_MINOR_UNITS


def minor_unit_exponent(currency: str) -> int:
    return CURRENCY_MINOR_UNITS.get(currency.upper(), 2)


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor-unit precision (half-up)."""
    exponent = minor_unit_exponent(currency)
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the smallest currency unit (e.g. cents)."""
    exponent = minor_unit_exponent(currency)
    return int(quantize_amount(amount, currency).scaleb(exponent))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert smallest-unit integer back to a decimal amount."""
    exponent = minor_unit_exponent(currency)
    return quantize_amount(Decimal(amount).scaleb(-exponent), currency)


def assert_valid_amount(amount: Decimal, currency: str) -> None:
    """Reject non-positive amounts and unknown currencies.

    Raises:
        ValidationError: If the amount or currency is not acceptable
    """
    if not is_supported_currency(currency):
        raise ValidationError(f"Unsupported currency: {currency}")
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
