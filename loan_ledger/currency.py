"""
Currency Precision Module

Handles currency precision and rounding for ledger amounts. Amounts are plain
Decimal values; NEVER float.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Any, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with precision info"""
    BRL = ("BRL", 2)  # Brazilian Real
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal('0.1') ** self.precision


DEFAULT_CURRENCY = Currency.BRL

ZERO = Decimal('0')


def round_amount(amount: Union[Decimal, int, str], currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """Round an amount to the currency precision using half-up rounding"""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return amount.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """
    Convert user input to Decimal.

    Floats go through str() so 0.1 stays 0.1. Raises ValidationError for
    anything that is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number", {"field": field_name, "value": str(value)})
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", {"field": field_name})
    return result


def get_currency(code: str) -> Currency:
    """Look up a currency by ISO code"""
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported currency: {code}", {"currency": code})
