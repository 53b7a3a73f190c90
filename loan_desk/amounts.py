"""
Amount Handling Module

Decimal helpers for rupee amounts. NEVER uses float for monetary values:
floats are converted through their string form before rounding.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_QUANTUM = Decimal('0.01')
ZERO = Decimal('0.00')
AMOUNT_PATTERN = re.compile(r'[+-]?(\d+(\.\d*)?|\.\d+)')

AmountLike = Union[Decimal, int, float, str]


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats
    
    Args:
        value: String representation of number, e.g. "₹40,000" or "1,250.50"
        
    Returns:
        Decimal value
        
    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")
    
    # Remove the rupee sign, whitespace and thousands separators; nothing else
    clean_value = re.sub(r'[₹,\s]', '', value)
    if not AMOUNT_PATTERN.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    
    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def to_amount(value: AmountLike) -> Decimal:
    """
    Normalize a monetary value to a two-place Decimal
    
    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a valid amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        amount = decimal_from_string(value)
    
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite, got {value}")
    
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def to_rate(value: AmountLike) -> Decimal:
    """Normalize an interest rate fraction without rounding it to paise"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    return decimal_from_string(value)


def format_inr(amount: Decimal) -> str:
    """Format for display, dropping paise on whole-rupee amounts"""
    if amount == amount.to_integral_value():
        return f"₹{int(amount):,}"
    return f"₹{amount:,.2f}"
