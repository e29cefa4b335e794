"""
FINANCIAL PRECISION - DECIMAL LOCK & STORAGE CONVERSION

This module provides:
1. Decimal precision lock (2-decimal places, ROUND_HALF_UP)
2. Decimal128 conversion for MongoDB storage
3. Value validation (no negative / zero amounts where forbidden)
4. Safe arithmetic helpers used by the ledger and recalculation code
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Any
from bson import Decimal128
import logging

from finance_core.financial_errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[float, int, str, Decimal, Decimal128, None]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any stored or submitted numeric value to Decimal.
    Missing values count as zero. Does NOT round.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if value is None:
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"Cannot convert boolean to a monetary amount: {value}")
    try:
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Not a numeric amount: {value!r}")


def round_financial(value: Numeric) -> Decimal:
    """Round to 2 decimal places. Call only at calculation boundaries."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_decimal128(value: Numeric) -> Decimal128:
    """Convert to Decimal128 for MongoDB storage (rounded)"""
    return Decimal128(round_financial(value))


def to_float(value: Numeric) -> float:
    """Rounded float for API responses"""
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    decimal_value = to_decimal(value)
    if decimal_value < ZERO:
        raise ValidationError(
            f"Financial value '{field_name}' cannot be negative: {value}",
            {"field": field_name}
        )
    return decimal_value


def validate_positive(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a financial value is strictly positive (> 0).
    Returns the Decimal so callers can reuse the parsed value.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= ZERO:
        raise ValidationError(
            f"Financial value '{field_name}' must be positive: {value}",
            {"field": field_name}
        )
    return decimal_value


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == ZERO:
        return ZERO
    return to_decimal(numerator) / denom


def decimals_to_storage(values: Any) -> Any:
    """
    Recursively convert Decimal values inside dicts/lists to Decimal128.
    Used when persisting derived summaries.
    """
    if isinstance(values, Decimal):
        return to_decimal128(values)
    if isinstance(values, dict):
        return {k: decimals_to_storage(v) for k, v in values.items()}
    if isinstance(values, list):
        return [decimals_to_storage(v) for v in values]
    return values
