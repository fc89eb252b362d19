"""
Money Helpers Module

Decimal conversion and rounding for every monetary figure in the ledger.
NEVER uses float for monetary values: amounts are Decimal with 2 fractional
digits, rounded half-up at each computed field.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# Smallest currency unit, used as tolerance when checking ledger invariants
TOLERANCE = CENT

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a value to Decimal without rounding

    Floats are rejected: a float has already lost the exact amount.

    Raises:
        ValueError: If the value cannot be represented as a Decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Numeric) -> Decimal:
    """Round to 2 decimals, half-up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_equal(left: Decimal, right: Decimal, tolerance: Decimal = TOLERANCE) -> bool:
    """Check two amounts agree to within the smallest currency unit"""
    return abs(left - right) <= tolerance


def format_amount(value: Decimal) -> str:
    """Format for display, e.g. 'Rs.1,250.00'"""
    return f"Rs.{round_money(value):,.2f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "1,250.50" or "Rs.100"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Strip currency prefix like "Rs." before removing other symbols
    stripped = re.sub(r'^\s*(rs\.?|inr)\s*', '', value.strip(), flags=re.IGNORECASE)
    clean_value = re.sub(r'[^\d.,\-+]', '', stripped)

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result
