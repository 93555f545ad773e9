# backend/studybuddy/core/money.py
"""
Money in explicit minor currency units.

Every amount that reaches the payment processor or the ledger is a ``Money``
value. Major-unit input (e.g. "25.50" dollars) must be converted with
``Money.from_major``; plain integers are never reinterpreted by magnitude.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Union

from .exceptions import InvalidAmountException

ONE = Decimal("1")
MINOR_UNITS_PER_MAJOR = 100


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest whole cent, halves away from zero."""
    return int(value.quantize(ONE, rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, rate: Union[Decimal, str]) -> int:
    """Return ``round_half_up(amount_cents * rate)`` using Decimal arithmetic."""
    return round_half_up(Decimal(amount_cents) * Decimal(str(rate)))


@dataclass(frozen=True)
class Money:
    """A positive amount of minor currency units (cents)."""

    cents: int
    currency: str = "usd"

    def __post_init__(self) -> None:
        # bool is an int subclass; True must not become one cent
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise InvalidAmountException(self.cents)
        if self.cents <= 0:
            raise InvalidAmountException(self.cents, "Amount must be greater than zero")
        object.__setattr__(self, "currency", (self.currency or "usd").lower())

    @classmethod
    def from_cents(cls, value: Any, currency: str = "usd") -> "Money":
        """Build from a value that is already in minor units."""
        if isinstance(value, bool):
            raise InvalidAmountException(value)
        if isinstance(value, int):
            return cls(value, currency)
        if isinstance(value, Decimal) and value == value.to_integral_value():
            return cls(int(value), currency)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return cls(int(value.strip()), currency)
        raise InvalidAmountException(value)

    @classmethod
    def from_major(cls, value: Any, currency: str = "usd") -> "Money":
        """Build from a major-unit amount such as ``"25.50"``; fractions of a cent are rejected."""
        if isinstance(value, bool) or value is None:
            raise InvalidAmountException(value)
        try:
            major = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidAmountException(value, "Amount is not numeric")
        if not major.is_finite():
            raise InvalidAmountException(value, "Amount is not numeric")
        cents = major * MINOR_UNITS_PER_MAJOR
        if cents != cents.to_integral_value():
            raise InvalidAmountException(value, "Amount has more precision than one cent")
        return cls(int(cents), currency)

    def percent(self, rate: Union[Decimal, str]) -> int:
        return percent_of(self.cents, rate)

    def __str__(self) -> str:
        return f"{self.cents / MINOR_UNITS_PER_MAJOR:.2f} {self.currency.upper()}"
