"""
Money Parsing Module

Converts loosely-typed input into Decimal amounts with cent precision.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

PRECISION = 2
ZERO = Decimal("0.00")
_QUANTUM = Decimal("0.1") ** PRECISION


def quantize(amount: Decimal) -> Decimal:
    """Round to cent precision"""
    rounded = amount.quantize(_QUANTUM, rounding=ROUND_HALF_UP)
    # Normalize negative zero so "-0" compares and prints as 0.00
    if rounded.is_zero():
        return ZERO
    return rounded


def parse_decimal(value: Any) -> Decimal:
    """
    Parse a decimal from external input without rounding it.

    Accepts decimal strings (surrounding whitespace ignored), ints and
    Decimals. Sign checks belong on this value: a sub-cent negative such
    as -0.004 only becomes 0.00 once rounded.

    Raises:
        InvalidAmount: if the value is empty, non-numeric or not finite
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmount(value)

    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip()
        if not text:
            raise InvalidAmount(value)
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise InvalidAmount(value) from None

    if not amount.is_finite():
        raise InvalidAmount(value)
    return amount


def parse_optional_decimal(value: Any) -> Decimal:
    """Parse a decimal where an empty value means zero"""
    if value is None or (isinstance(value, str) and not value.strip()):
        return ZERO
    return parse_decimal(value)


def parse_amount(value: Any) -> Decimal:
    """
    Parse an amount from external input, rounded to cents.

    Raises:
        InvalidAmount: if the value is empty, non-numeric, not finite or
            too large for the decimal context
    """
    amount = parse_decimal(value)
    try:
        return quantize(amount)
    except InvalidOperation:
        # Too many digits for the context precision
        raise InvalidAmount(value) from None


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{amount:,.{PRECISION}f}"
