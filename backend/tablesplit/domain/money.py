# backend/tablesplit/domain/money.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


class MoneyError(ValueError):
    """Raised when currency/money arithmetic, parsing or formatting fails."""


CURRENCY_SYMBOLS = {
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "CHF": "CHF ",
}


@dataclass(frozen=True)
class Money:
    """
    Simple money value object using integer minor units (cents).
    No floats anywhere.
    """
    cents: int
    currency: str = "EUR"

    def __post_init__(self) -> None:
        if not _is_int(self.cents):
            raise MoneyError("Money.cents must be an int")
        if not isinstance(self.currency, str) or not self.currency.strip():
            raise MoneyError("Money.currency must be a non-empty string")

    def format(self, symbol: str | None = None) -> str:
        """
        Format cents as a string like "€12.34".
        """
        if symbol is None:
            symbol = CURRENCY_SYMBOLS.get(self.currency, self.currency)
        sign = "-" if self.cents < 0 else ""
        abs_cents = abs(self.cents)
        units = abs_cents // 100
        cents = abs_cents % 100
        return f"{sign}{symbol}{units}.{cents:02d}"


@dataclass(frozen=True)
class Division:
    """
    Result of dividing a total evenly among `count` payers.

    base_amount_cents * count + remainder_cents == total for count >= 1.
    """
    base_amount_cents: int
    remainder_cents: int


def _is_int(value: object) -> bool:
    # bool is an int subclass; amounts must never be True/False
    return isinstance(value, int) and not isinstance(value, bool)


def divide_evenly(total_cents: int, count: int) -> Division:
    """
    Integer division of a total among `count` payers.

    count <= 0 means nobody is left to pay and yields (0, 0) instead of an
    error. Otherwise base = total // count and the leftover cents are
    returned separately so the caller decides who carries them.
    """
    if not _is_int(total_cents):
        raise MoneyError("total_cents must be an int")
    if total_cents < 0:
        raise MoneyError("total_cents must be >= 0")
    if not _is_int(count):
        raise MoneyError("count must be an int")

    if count <= 0:
        return Division(base_amount_cents=0, remainder_cents=0)

    base = total_cents // count
    remainder = total_cents - base * count
    return Division(base_amount_cents=base, remainder_cents=remainder)


def apply_percentage(base_cents: int, percent: Union[int, float, str, Decimal]) -> int:
    """
    Return round(base_cents * percent / 100) in cents.

    Rounds half away from zero (ROUND_HALF_UP on Decimal):
      apply_percentage(250, 10) -> 25
      apply_percentage(25, 10) -> 3     (2.5 rounds up)
      apply_percentage(-25, 10) -> -3
    Float percents go through str() so 12.5 is exactly 12.5.
    """
    if not _is_int(base_cents):
        raise MoneyError("base_cents must be an int")
    if isinstance(percent, bool):
        raise MoneyError("percent must be a number")
    try:
        pct = percent if isinstance(percent, Decimal) else Decimal(str(percent).strip())
    except (InvalidOperation, ValueError) as e:
        raise MoneyError(f"invalid percentage: {percent}") from e
    if not pct.is_finite():
        raise MoneyError(f"invalid percentage: {percent}")

    value = Decimal(base_cents) * pct / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_minor_units(cents: int, currency_symbol: str = "€") -> str:
    """
    Convert integer cents to a display string like "€3.34".

    A known currency code ("EUR", "USD", ...) is swapped for its symbol;
    anything else is used as the symbol itself. Formatting only, the
    amount is never recomputed.
    """
    if not _is_int(cents):
        raise MoneyError("cents must be an int")
    symbol = CURRENCY_SYMBOLS.get(currency_symbol, currency_symbol)
    return Money(cents=cents).format(symbol=symbol)
