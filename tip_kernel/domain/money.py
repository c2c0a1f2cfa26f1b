"""
Currency amounts at the ledger boundary.

Public APIs speak ``Decimal`` major units; storage and all arithmetic that
must conserve value use integer minor units. Conversion is exact: an amount
finer than the currency's minor unit is rejected, never rounded.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from tip_kernel.exceptions import InvalidAmountError

# ISO 4217 minor-unit exponents. Anything not listed uses 2.
_MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "CLP": 0,
    "ISK": 0,
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
}

SUPPORTED_CURRENCIES: frozenset[str] = frozenset(
    {
        "AUD", "BHD", "BRL", "CAD", "CHF", "CLP", "CNY", "DKK", "EUR", "GBP",
        "HKD", "INR", "IQD", "ISK", "JOD", "JPY", "KRW", "KWD", "MXN", "NOK",
        "NZD", "OMR", "PLN", "SEK", "SGD", "TND", "USD", "VND", "ZAR",
    }
)


def validate_currency(code: str) -> str:
    normalized = code.strip().upper() if code else ""
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency code: {code!r}")
    return normalized


def minor_unit_exponent(currency: str) -> int:
    return _MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def _as_decimal(amount: Decimal | int | str) -> Decimal:
    if isinstance(amount, float):
        raise InvalidAmountError(amount, "floats are not accepted for money")
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmountError(amount, "not a decimal number") from exc
    if not value.is_finite():
        raise InvalidAmountError(amount, "not a finite number")
    return value


def to_minor_units(amount: Decimal | int | str, currency: str = "USD") -> int:
    """Convert a major-unit amount to integer minor units, exactly."""
    value = _as_decimal(amount)
    scaled = value.scaleb(minor_unit_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise InvalidAmountError(
            amount, f"more precise than the {currency} minor unit"
        )
    return int(scaled)


def from_minor_units(units: int, currency: str = "USD") -> Decimal:
    exponent = minor_unit_exponent(currency)
    return Decimal(units).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))


def round_to_minor_units(amount: Decimal, currency: str = "USD") -> int:
    """Round half-up to the nearest minor unit. Used for computed figures
    (percentages of sales), never for amounts received from callers."""
    exponent = minor_unit_exponent(currency)
    return int(amount.scaleb(exponent).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def require_positive(amount: Decimal | int | str, currency: str = "USD") -> int:
    units = to_minor_units(amount, currency)
    if units <= 0:
        raise InvalidAmountError(amount, "must be greater than zero")
    return units
