"""Money conversion helpers using fixed micro-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_UNIT = 1_000_000
_UNIT_QUANT = Decimal("0.000001")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse a currency amount, rejecting NaN and infinities."""
    try:
        dec = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to micro-units, rounding up (conservative)."""
    dec = to_decimal(value).quantize(_UNIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_UNIT)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a limit to micro-units, rounding down (conservative)."""
    dec = to_decimal(value).quantize(_UNIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def format_micros(value: int, currency: str = "USD") -> str:
    """Format integer micro-units as a currency string."""
    if currency.upper() == "USD":
        return f"${micros_to_decimal(value):.2f}"
    return f"{micros_to_decimal(value):.2f} {currency.upper()}"
