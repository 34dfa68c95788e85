"""
Money and Currency Module

Handles ISO 4217 currency codes and immutable money values held as integer
minor units (cents, pence, yen). NEVER uses float for monetary values: the
amount path is integers end to end, Decimal only at the edges for display
and conversion from major units.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Union
from enum import Enum

from .exceptions import CurrencyMismatch, InvalidCurrency

# Signed 64-bit range for minor-unit amounts
MIN_AMOUNT = -(2 ** 63)
MAX_AMOUNT = 2 ** 63 - 1


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places
    CAD = ("CAD", 2)  # Canadian Dollar, 2 decimal places
    CHF = ("CHF", 2)  # Swiss Franc, 2 decimal places
    AUD = ("AUD", 2)  # Australian Dollar, 2 decimal places
    KWD = ("KWD", 3)  # Kuwaiti Dinar, 3 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, value: Union[str, "Currency"]) -> "Currency":
        """Resolve a 3-letter code (or a Currency) to a Currency"""
        if isinstance(value, Currency):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise InvalidCurrency(value)


@dataclass(frozen=True, eq=False)
class Money:
    """
    Immutable money representation: integer minor units plus currency.
    All operations return new values.
    """
    amount: int
    currency: Currency

    def __post_init__(self):
        # bool is an int subclass; it is never a valid amount
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError(
                f"Money amount must be an integer number of minor units, got {type(self.amount).__name__}"
            )
        if not MIN_AMOUNT <= self.amount <= MAX_AMOUNT:
            raise OverflowError(f"Money amount {self.amount} exceeds the signed 64-bit range")
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, 'currency', Currency.from_code(self.currency))

    @classmethod
    def zero(cls, currency: Union[str, Currency]) -> 'Money':
        return cls(0, Currency.from_code(currency))

    @classmethod
    def from_decimal(cls, value: Decimal, currency: Union[str, Currency]) -> 'Money':
        """
        Build Money from a major-unit Decimal (e.g. Decimal('100.50') USD -> 10050)

        Rounds half-up to the currency's precision. Floats are rejected.
        """
        currency = Currency.from_code(currency)
        if isinstance(value, float):
            raise TypeError("Use Decimal or str for major-unit amounts, never float")
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        minor = validate_decimal_precision(value, currency).scaleb(currency.precision)
        return cls(int(minor), currency)

    def to_decimal(self) -> Decimal:
        """Major-unit Decimal value (10050 USD -> Decimal('100.50'))"""
        return Decimal(self.amount).scaleb(-self.currency.precision)

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatch(self.currency, other.currency, operation)

    def add(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def multiply(self, multiplier: Union[int, Decimal]) -> 'Money':
        """Multiply by an integer or Decimal scalar, rounding half-up to whole minor units"""
        if isinstance(multiplier, Money):
            raise TypeError("Cannot multiply Money by Money")
        if isinstance(multiplier, bool) or isinstance(multiplier, float):
            raise TypeError(f"Unsupported multiplier type {type(multiplier).__name__}")
        if isinstance(multiplier, int):
            return Money(self.amount * multiplier, self.currency)
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        product = (Decimal(self.amount) * multiplier).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
        return Money(int(product), self.currency)

    def absolute(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def negate(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __add__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other: 'Money') -> 'Money':
        if not isinstance(other, Money):
            return NotImplemented
        return self.subtract(other)

    def __mul__(self, multiplier: Union[int, Decimal]) -> 'Money':
        return self.multiply(multiplier)

    __rmul__ = __mul__

    def __neg__(self) -> 'Money':
        return self.negate()

    def __abs__(self) -> 'Money':
        return self.absolute()

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount == other.amount

    def __ne__(self, other) -> bool:
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == 0

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > 0

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < 0

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,d}"
        return f"{self.currency.code} {self.to_decimal():,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


def validate_decimal_precision(value: Decimal, currency: Currency) -> Decimal:
    """
    Round a major-unit Decimal to currency precision

    Args:
        value: Decimal to validate
        currency: Currency defining precision

    Returns:
        Properly rounded Decimal
    """
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )
