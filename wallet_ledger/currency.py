"""
Money Value Type

ISO 4217 currency codes and an exact, immutable Money type. NEVER uses float
for monetary values: amounts are Decimal with at most the currency's number
of fractional digits, and anything that would need rounding is rejected.
"""

from decimal import Decimal, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum

from .errors import ValidationError, InsufficientFunds

# High precision for financial calculations
getcontext().prec = 28

DEFAULT_MIN_AMOUNT = Decimal("0.01")
DEFAULT_MAX_AMOUNT = Decimal("100000.00")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    GHS = ("GHS", 2)  # Ghana Cedi
    NGN = ("NGN", 2)  # Nigerian Naira
    KES = ("KES", 2)  # Kenyan Shilling
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            raise ValidationError(f"Unsupported currency: {code!r}")


def _to_decimal(value: Union[str, int, Decimal]) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        # float is never exact; bool is an int subclass
        raise ValidationError(f"Amount must be a decimal string or integer, got {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}")
    else:
        raise ValidationError(f"Amount must be a decimal string or integer, got {type(value).__name__}")

    if not result.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return result


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and exact precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = _to_decimal(self.amount)
        try:
            quantized = amount.quantize(self.currency.quantum)
        except InvalidOperation:
            # More digits than the context precision can hold at this scale
            raise ValidationError("Amount is out of range")
        if quantized != amount:
            raise ValidationError(
                f"Amount can have maximum {self.currency.precision} decimal places"
            )
        object.__setattr__(self, 'amount', quantized)

    @classmethod
    def parse(
        cls,
        value: Union[str, int, Decimal],
        currency: Currency,
        max_amount: Optional[Decimal] = DEFAULT_MAX_AMOUNT,
        min_amount: Optional[Decimal] = DEFAULT_MIN_AMOUNT
    ) -> 'Money':
        """
        Parse a caller-supplied positive amount.

        Args:
            value: Decimal string, Decimal or integer major units
            currency: Currency of the amount
            max_amount: Ceiling (inclusive); None disables it
            min_amount: Floor (inclusive); None only requires > 0

        Raises:
            ValidationError: non-numeric, too many fractional digits,
                non-positive, below the floor or above the ceiling
        """
        money = cls(_to_decimal(value), currency)
        if not money.is_positive():
            raise ValidationError("Amount must be positive")
        if min_amount is not None and money.amount < min_amount:
            raise ValidationError(f"Amount must be at least {min_amount}")
        if max_amount is not None and money.amount > max_amount:
            raise ValidationError(f"Amount cannot exceed {max_amount}")
        return money

    @classmethod
    def from_minor_units(cls, minor: int, currency: Currency) -> 'Money':
        """Build from an integer count of minor units (pesewas, cents)"""
        if isinstance(minor, bool) or not isinstance(minor, int):
            raise ValidationError("Minor-unit amount must be an integer")
        return cls(Decimal(minor).scaleb(-currency.precision), currency)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def to_minor_units(self) -> int:
        return int(self.amount.scaleb(self.currency.precision))

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValidationError(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def subtract_from_balance(self, other: 'Money') -> 'Money':
        """
        Subtract ``other`` from this balance.

        Raises:
            InsufficientFunds: if the result would be negative
        """
        result = self - other
        if result.is_negative():
            raise InsufficientFunds(
                f"Insufficient funds: available {self.to_string()}, requested {other.to_string()}",
                details={"available": str(self.amount), "requested": str(other.amount)}
            )
        return result

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data["amount"]), Currency.from_code(data["currency"]))
