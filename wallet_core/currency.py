"""
Money Module

Fixed-point money for every balance, amount and fee. Values are Decimal
rounded to the currency's minor unit. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

from .errors import InvalidAmount

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 codes with minor-unit precision"""
    INR = ("INR", 2, "₹")
    USD = ("USD", 2, "$")
    EUR = ("EUR", 2, "€")
    GBP = ("GBP", 2, "£")
    JPY = ("JPY", 0, "¥")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable amount in a single currency, always rounded to minor units.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise InvalidAmount(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def minor_units(self) -> int:
        """Amount as an integer count of the smallest currency unit"""
        return int(self.amount.scaleb(self.currency.precision))

    def to_string(self) -> str:
        """Format for display, e.g. ₹1,250.00"""
        return f"{self.currency.symbol}{self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Union[str, int, Decimal, float], currency: Currency) -> Money:
    """
    Convert user input into Money.

    Strings may carry a currency symbol and thousands separators. Floats are
    routed through their repr so 0.1 stays 0.1.

    Raises:
        InvalidAmount: If the value is empty, not a number, not finite, or
            finer than the currency's minor unit
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmount(f"Expected {currency.code}, got {value.currency.code}")
        return value

    if isinstance(value, bool):
        raise InvalidAmount(f"Cannot convert {value!r} to an amount")

    if isinstance(value, str):
        clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())
        if ',' in clean_value:
            clean_value = clean_value.replace(',', '')
        if not clean_value:
            raise InvalidAmount(f"Cannot convert {value!r} to an amount")
        raw = clean_value
    else:
        raw = str(value)

    try:
        amount = Decimal(raw)
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Cannot convert {value!r} to an amount")

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    try:
        exact = amount == amount.quantize(currency.quantum)
    except InvalidOperation:
        raise InvalidAmount(f"Amount {value!r} is out of range")
    if not exact:
        raise InvalidAmount(
            f"Amount {value!r} has more than {currency.precision} decimal places for {currency.code}"
        )

    return Money(amount, currency)


def require_positive(value, currency: Currency, minimum=None, label: str = "Amount") -> Money:
    """Parse an amount and reject it unless it is > 0 and >= minimum"""
    money = parse_amount(value, currency)
    if not money.is_positive():
        raise InvalidAmount(f"{label} must be positive, got {money.to_string()}")
    if minimum is not None:
        floor = parse_amount(minimum, currency)
        if money < floor:
            raise InvalidAmount(f"{label} must be at least {floor.to_string()}, got {money.to_string()}")
    return money
