"""Conversions between major-unit decimals and signed minor-unit integers."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from ..utils.exceptions import ValidationError

# ISO 4217 minor-unit exponents that differ from the usual 2
CURRENCY_EXPONENTS: dict[str, int] = {
    "BHD": 3,
    "CLP": 0,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "VND": 0,
}
DEFAULT_EXPONENT = 2

# Signed 64-bit range of the ledger store's amount column
MAX_MINOR_UNITS = 2 ** 63 - 1


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def parse_decimal(value: Any) -> Decimal:
    """
    Parse an API amount (number or string) into a Decimal.

    Strings may carry a currency symbol and thousands separators.

    Raises:
        ValidationError: If the value is not a number
    """
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError(f"Not a finite amount: {value!r}")
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Not an amount: {value!r}")
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
    try:
        # str() first so floats keep their printed value (0.1 -> "0.1")
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Not an amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Not a finite amount: {value!r}")
    return amount


def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Convert a major-unit amount to an integer count of minor units.

    Raises:
        ValidationError: If the amount is not finite or does not fit the ledger
    """
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise ValidationError(f"Not a finite amount: {amount!r}")
    scale = Decimal(10) ** currency_exponent(currency)
    try:
        minor = int((amount * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError, OverflowError) as e:
        raise ValidationError(f"Amount {amount} {currency} cannot be represented: {e}") from e
    if abs(minor) > MAX_MINOR_UNITS:
        raise ValidationError(f"Amount {amount} {currency} is out of range")
    return minor


def to_major_units(amount: int, currency: str) -> Decimal:
    """Convert minor units back to a major-unit Decimal with the currency's precision."""
    exponent = currency_exponent(currency)
    return (Decimal(amount) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )
