"""
Currency Precision Module

ISO 4217 currency codes with their minor-unit precision, and Decimal helpers
for rounding loan amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
CENT = Decimal('0.01')
ROUNDING_TOLERANCE = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    ZMW = ("ZMW", 2)  # Zambian Kwacha
    USD = ("USD", 2)  # US Dollar
    KES = ("KES", 2)  # Kenyan Shilling
    UGX = ("UGX", 0)  # Ugandan Shilling, no minor unit
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision
    
    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, str, int, float]) -> Decimal:
    """
    Convert a value to Decimal without going through binary floating point
    
    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    
    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value}")
    return result


def round_money(value: Decimal, currency: Currency = Currency.ZMW) -> Decimal:
    """Round to currency precision using half-up rounding"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def round_cents(value: Decimal) -> Decimal:
    """Round to two decimal places (half-up)"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def is_settled(paid: Decimal, due: Decimal, tolerance: Decimal = ROUNDING_TOLERANCE) -> bool:
    """True when what is still owed is within the rounding tolerance"""
    return due - paid <= tolerance
