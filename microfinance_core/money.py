"""
Decimal Arithmetic Module

Single home for monetary arithmetic. Every calculation runs in one fixed
precision Decimal context with ROUND_HALF_UP; rounding to cents happens only
at output boundaries via round_money(). NEVER uses float for monetary values.
"""

from decimal import Decimal, Context, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation
from typing import Iterable, Union
import re

from .errors import InvalidInputError


# Dedicated context so callers' thread-local decimal settings never leak in
MONEY_CONTEXT = Context(prec=34, rounding=ROUND_HALF_UP)

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')

DecimalLike = Union[Decimal, int, str]


def to_decimal(value: DecimalLike) -> Decimal:
    """
    Convert an int, decimal string or Decimal to Decimal.

    Floats are refused: a binary float has already lost the exact value.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInputError(f"Monetary values must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidInputError(f"Cannot convert '{value}' to Decimal")
    else:
        raise InvalidInputError(f"Unsupported monetary value type {type(value).__name__}")

    if not result.is_finite():
        raise InvalidInputError(f"Monetary value must be finite, got {value}")
    return result


def add(a: Decimal, b: Decimal) -> Decimal:
    return MONEY_CONTEXT.add(a, b)


def sub(a: Decimal, b: Decimal) -> Decimal:
    return MONEY_CONTEXT.subtract(a, b)


def mul(a: Decimal, b: Decimal) -> Decimal:
    return MONEY_CONTEXT.multiply(a, b)


def div(a: Decimal, b: Decimal, zero_on_zero: bool = False) -> Decimal:
    """
    Divide a by b.

    Zero terms and zero rates are valid loan inputs, so callers that expect a
    zero divisor pass zero_on_zero=True and get zero back instead of an error.
    """
    if b == ZERO:
        if zero_on_zero:
            return ZERO
        raise InvalidInputError("Division by zero")
    return MONEY_CONTEXT.divide(a, b)


def power(base: Decimal, exponent: int) -> Decimal:
    return MONEY_CONTEXT.power(base, Decimal(exponent))


def ln(value: Decimal) -> Decimal:
    return MONEY_CONTEXT.ln(value)


def compare(a: Decimal, b: Decimal) -> int:
    """Return -1, 0 or 1"""
    return int(MONEY_CONTEXT.compare(a, b))


def max_of(*values: Decimal) -> Decimal:
    result = values[0]
    for value in values[1:]:
        result = MONEY_CONTEXT.max(result, value)
    return result


def min_of(*values: Decimal) -> Decimal:
    result = values[0]
    for value in values[1:]:
        result = MONEY_CONTEXT.min(result, value)
    return result


def total(values: Iterable[Decimal]) -> Decimal:
    result = ZERO
    for value in values:
        result = add(result, value)
    return result


def percent_to_rate(percent: Decimal) -> Decimal:
    """Convert a percentage (5 for 5%) to a fraction (0.05)"""
    return div(percent, HUNDRED)


def ceil_to_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half up. Use only when producing output."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    """Format for display, e.g. 'MK 1,234.56'"""
    return f"MK {round_money(value):,.2f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert user formatted text to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "MK 1,250.50"

    Returns:
        Decimal value

    Raises:
        InvalidInputError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidInputError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) < 3:  # Decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Thousands separator
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    return to_decimal(clean_value)
