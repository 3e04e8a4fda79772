"""
Monetary Amount Module

Single-currency monetary value backed by Decimal. NEVER uses float for
monetary values.

Rounding rule: addition, subtraction and negation are exact. Multiplication
and division round ROUND_HALF_UP to AMOUNT_PRECISION fractional digits at
every operation, so repeated division (e.g. balance / months remaining) is
deterministic across runs and backends.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_PRECISION = 2
_QUANTUM = Decimal('0.1') ** AMOUNT_PRECISION

Numeric = Union['Amount', Decimal, int, str]


def _to_decimal(value: Numeric) -> Decimal:
    if isinstance(value, Amount):
        return value.value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Refusing to build an amount from {type(value).__name__}: {value!r}")
    if isinstance(value, Decimal):
        decimal_value = value
    elif isinstance(value, (int, str)):
        try:
            decimal_value = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    else:
        raise TypeError(f"Unsupported amount type: {type(value).__name__}")
    # Infinity and NaN parse as Decimals but are never money
    if not decimal_value.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return decimal_value


def round_amount(value: Decimal) -> Decimal:
    """Round a Decimal to the ledger's fixed precision (half up)"""
    return value.quantize(_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Amount:
    """
    Immutable monetary amount.
    All monetary values in the ledger MUST use this class.
    """
    value: Decimal

    def __post_init__(self):
        object.__setattr__(self, 'value', _to_decimal(self.value))

    @classmethod
    def of(cls, value: Numeric) -> 'Amount':
        """Build an Amount from an Amount, Decimal, int or numeric string"""
        if isinstance(value, Amount):
            return value
        return cls(_to_decimal(value))

    @classmethod
    def zero(cls) -> 'Amount':
        return cls(Decimal('0'))

    def __add__(self, other: Numeric) -> 'Amount':
        return Amount(self.value + _to_decimal(other))

    def __sub__(self, other: Numeric) -> 'Amount':
        return Amount(self.value - _to_decimal(other))

    def __mul__(self, multiplier: Numeric) -> 'Amount':
        return Amount(round_amount(self.value * _to_decimal(multiplier)))

    def __truediv__(self, divisor: Numeric) -> 'Amount':
        divisor = _to_decimal(divisor)
        if divisor == 0:
            raise ZeroDivisionError("Cannot divide an amount by zero")
        return Amount(round_amount(self.value / divisor))

    def __neg__(self) -> 'Amount':
        return Amount(-self.value)

    def __abs__(self) -> 'Amount':
        return Amount(abs(self.value))

    def __eq__(self, other) -> bool:
        if isinstance(other, Amount):
            return self.value == other.value
        if isinstance(other, (Decimal, int)) and not isinstance(other, bool):
            return self.value == other
        return False

    def __hash__(self) -> int:
        return hash(self.value)

    def __lt__(self, other: Numeric) -> bool:
        return self.value < _to_decimal(other)

    def __le__(self, other: Numeric) -> bool:
        return self.value <= _to_decimal(other)

    def __gt__(self, other: Numeric) -> bool:
        return self.value > _to_decimal(other)

    def __ge__(self, other: Numeric) -> bool:
        return self.value >= _to_decimal(other)

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.value == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.value > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.value < Decimal('0')

    def rounded(self) -> 'Amount':
        return Amount(round_amount(self.value))

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.value:,.{AMOUNT_PRECISION}f}"

    def __str__(self) -> str:
        return str(self.value)

    def __repr__(self) -> str:
        return f"Amount('{self.value}')"
