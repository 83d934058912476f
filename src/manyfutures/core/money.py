"""Fixed-point money helpers.

All money values are ``Decimal`` quantized to the currency's minor unit.
Floats are rejected outright.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# ISO 4217 minor units for the currencies we bill in; anything else uses 2
MINOR_UNITS = {
    "GBP": 2,
    "USD": 2,
    "EUR": 2,
    "JPY": 0,
}


def minor_unit_exponent(currency: str) -> Decimal:
    """Return the quantization exponent for a currency (e.g. Decimal("0.01") for GBP)."""
    digits = MINOR_UNITS.get(currency.upper(), 2)
    return Decimal(1).scaleb(-digits)


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Convert a money input to Decimal without going through binary floating point.

    Raises:
        TypeError: If value is a float
        ValueError: If value cannot be parsed or is not finite
    """
    if isinstance(value, float):
        raise TypeError("Money values must not be floats; pass Decimal, int or str")
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Invalid money amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Money amount must be finite, got {value!r}")
    return result


def quantize_money(value: Decimal | int | str, currency: str) -> Decimal:
    """Round a money value to the currency's minor unit (half-up)."""
    return to_decimal(value).quantize(minor_unit_exponent(currency), rounding=ROUND_HALF_UP)
