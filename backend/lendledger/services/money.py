"""Fixed-point money.

Amounts are held as an integer count of the currency's minor unit (cents for
USD).  Addition and subtraction are exact; anything that could produce a
fraction of a minor unit either takes an explicit rounding mode or allocates
the remainder so that the parts always sum back to the whole.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from functools import total_ordering
from typing import Iterable, Sequence

from lendledger.services.errors import CurrencyMismatch, InvalidAmount

# ISO 4217 exponent per supported currency
MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "JPY": 0,
}


def minor_unit_exponent(currency: str) -> int:
    try:
        return MINOR_UNIT_EXPONENTS[currency]
    except KeyError:
        raise InvalidAmount(f"Unsupported currency '{currency}'") from None


@total_ordering
@dataclass(frozen=True, slots=True)
class Money:
    minor: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise InvalidAmount(f"Minor-unit amount must be an integer, got {self.minor!r}")
        minor_unit_exponent(self.currency)

    # ── Construction ─────────────────────────────────────────

    @classmethod
    def of(cls, value: Decimal | int | str, currency: str) -> Money:
        """Build from a major-unit value such as ``"1250.50"``.

        Values carrying more precision than the currency's minor unit are
        rejected instead of rounded.  Floats are refused outright.
        """
        if isinstance(value, float):
            raise InvalidAmount("Floats are not accepted; pass a Decimal or a string")
        try:
            dec = Decimal(value)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmount(f"'{value}' is not a valid amount") from None
        if not dec.is_finite():
            raise InvalidAmount(f"'{value}' is not a finite amount")
        scaled = dec.scaleb(minor_unit_exponent(currency))
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"{value} has more precision than {currency} allows"
            )
        return cls(int(scaled), currency)

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    # ── Conversion ───────────────────────────────────────────

    def to_decimal(self) -> Decimal:
        exp = minor_unit_exponent(self.currency)
        return Decimal(self.minor).scaleb(-exp)

    def __str__(self) -> str:
        exp = minor_unit_exponent(self.currency)
        return f"{self.to_decimal():.{exp}f} {self.currency}"

    # ── Predicates ───────────────────────────────────────────

    def is_zero(self) -> bool:
        return self.minor == 0

    def is_positive(self) -> bool:
        return self.minor > 0

    def is_negative(self) -> bool:
        return self.minor < 0

    def require_positive(self, field: str = "amount") -> Money:
        if self.minor <= 0:
            raise InvalidAmount(f"{field} must be greater than zero, got {self}", field=field)
        return self

    # ── Arithmetic ───────────────────────────────────────────

    def _check(self, other: object) -> Money:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(
                f"Cannot combine {self.currency} with {other.currency}"
            )
        return other

    def __add__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.minor - other.minor, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.minor, self.currency)

    def __mul__(self, factor: int) -> Money:
        if isinstance(factor, bool) or not isinstance(factor, int):
            raise TypeError("Money can only be multiplied by an int; use mul_rate() for rates")
        return Money(self.minor * factor, self.currency)

    __rmul__ = __mul__

    def mul_rate(self, rate: Decimal, rounding: str = ROUND_HALF_EVEN) -> Money:
        """Multiply by a decimal factor, rounding to the minor unit with *rounding*."""
        product = (Decimal(self.minor) * Decimal(rate)).quantize(Decimal(1), rounding=rounding)
        return Money(int(product), self.currency)

    def percent(self, pct: Decimal, rounding: str = ROUND_HALF_EVEN) -> Money:
        return self.mul_rate(Decimal(pct) / Decimal(100), rounding=rounding)

    def allocate(self, parts: int) -> list[Money]:
        """Split into *parts* near-equal amounts; earlier parts take the remainder."""
        if parts <= 0:
            raise InvalidAmount("Cannot allocate into zero or fewer parts")
        return self.allocate_by_ratios([1] * parts)

    def allocate_by_ratios(self, ratios: Sequence[int | Decimal]) -> list[Money]:
        """Largest-remainder split proportional to *ratios*.

        The result always sums to ``self``.  Ties in the remainder go to the
        earliest share.
        """
        weights = [Decimal(r) for r in ratios]
        if not weights or any(w < 0 for w in weights):
            raise InvalidAmount("Ratios must be a non-empty list of non-negative numbers")
        total = sum(weights)
        if total == 0:
            raise InvalidAmount("Ratios must not all be zero")

        sign = -1 if self.minor < 0 else 1
        whole = abs(self.minor)
        exact = [Decimal(whole) * w / total for w in weights]
        floors = [int(x) for x in exact]
        leftover = whole - sum(floors)
        order = sorted(range(len(exact)), key=lambda k: (-(exact[k] - floors[k]), k))
        for k in order[:leftover]:
            floors[k] += 1
        return [Money(sign * f, self.currency) for f in floors]

    # ── Ordering ─────────────────────────────────────────────

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.minor == other.minor and self.currency == other.currency

    def __lt__(self, other: Money) -> bool:
        other = self._check(other)
        return self.minor < other.minor

    def __hash__(self) -> int:
        return hash((self.minor, self.currency))


def money_sum(items: Iterable[Money], currency: str) -> Money:
    """Sum that returns a zero of *currency* for an empty iterable."""
    total = Money.zero(currency)
    for item in items:
        total = total + item
    return total
