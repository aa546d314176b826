"""
Money Module

Fixed-point currency amounts with two fractional digits. NEVER uses float
for monetary values: every amount is a Decimal quantized to cents.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
import re

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')

AmountLike = Union['Money', Decimal, int, str, float]


def round_to_cents(value: Decimal) -> Decimal:
    """Round a Decimal to two fractional digits (half-up)"""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValidationError("Boolean is not a monetary amount")
    if isinstance(value, (int, float)):
        # str() keeps the shortest repr so 0.1 stays 0.1
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Cannot interpret {value!r} as a monetary amount")
    raise ValidationError(f"Cannot interpret {value!r} as a monetary amount")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation rounded to cents.
    All loan and transaction amounts MUST use this class.
    """
    amount: Decimal

    def __post_init__(self):
        value = _to_decimal(self.amount)
        if not value.is_finite():
            raise ValidationError(f"Amount must be finite, got {value}")
        object.__setattr__(self, 'amount', round_to_cents(value))

    @classmethod
    def of(cls, value: AmountLike) -> 'Money':
        """Build Money from Money, Decimal, int or string"""
        if isinstance(value, Money):
            return value
        return cls(_to_decimal(value))

    @classmethod
    def zero(cls) -> 'Money':
        return cls(Decimal('0'))

    def __add__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __radd__(self, other) -> 'Money':
        # Lets sum() start from the integer 0
        if other == 0:
            return self
        return NotImplemented

    def __sub__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __neg__(self) -> 'Money':
        return Money(-self.amount)

    def __lt__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount >= other.amount

    def clamp_to_zero(self) -> 'Money':
        """Return max(self, 0)"""
        if self.is_negative():
            return Money.zero()
        return self

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.amount:,.2f}"

    def __str__(self) -> str:
        return str(self.amount)


# Optional currency marker ("$", "Rs.", "INR") before or after the number
_AMOUNT_PATTERN = re.compile(
    r'^(?:[^\W\d_]+\.?|[$€£₹])?\s*([+-]?[\d.,]+)\s*(?:[^\W\d_]+|[$€£₹])?$'
)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    A currency marker may precede or follow the number, separated by
    optional whitespace. Anything else around or inside the number is
    rejected rather than dropped.

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Value must be a non-empty string")

    match = _AMOUNT_PATTERN.match(value.strip())
    if not match:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
    clean_value = match.group(1)

    # Handle comma as decimal separator (European format)
    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Likely decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Likely thousands separator
            clean_value = clean_value.replace(',', '')
    elif ',' in clean_value:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal")
