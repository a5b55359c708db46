"""
Amounts in the smallest currency unit.

Stripe, the payments tables and every request body speak integer minor
units (cents). Only account balances are kept in major units, so the
conversion happens in exactly one place: MinorUnits.to_major().
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated

from pydantic import AfterValidator, Field

ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def currency_exponent(currency: str) -> int:
    return 0 if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES else 2


class MinorUnits(int):
    """Integer amount in the currency's minor unit (e.g. cents for usd)."""

    def to_major(self, currency: str = "usd") -> Decimal:
        exponent = currency_exponent(currency)
        quantum = Decimal(1).scaleb(-exponent)
        return (Decimal(int(self)).scaleb(-exponent)).quantize(quantum)

    @classmethod
    def from_major(cls, value, currency: str = "usd") -> "MinorUnits":
        exponent = currency_exponent(currency)
        scaled = Decimal(str(value)).scaleb(exponent)
        return cls(int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP)))

    def format(self, currency: str = "usd") -> str:
        major = self.to_major(currency)
        if (currency or "").lower() == "usd":
            return f"${major:,}"
        return f"{major:,} {currency.upper()}"

    def __repr__(self) -> str:
        return f"MinorUnits({int(self)})"


def _non_zero(value: int) -> int:
    if value == 0:
        raise ValueError("amount must not be zero")
    return value


Amount = Annotated[int, Field(gt=0), AfterValidator(MinorUnits)]
SignedAmount = Annotated[int, AfterValidator(_non_zero), AfterValidator(MinorUnits)]
