"""Amortization schedule for fixed-rate installment loans.

Uses standard amortization: PMT = P * [i(1+i)^n] / [(1+i)^n - 1] with
i = annual_rate / 100 / 12.  Every figure is carried in integer minor units;
the last installment absorbs whatever principal is left so the principal
parts always sum to P exactly.

Over long tenures a half-up rounded payment can retire the principal before
the final month.  When that happens the payment is rounded down instead, and
each early principal part is held between zero and the balance less one
minor unit per later installment, so every installment stays payable.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, localcontext

from dateutil.relativedelta import relativedelta

from lendledger.services.errors import InvalidTerms
from lendledger.services.money import Money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledInstallment:
    number: int
    due_date: date
    principal: Money
    interest: Money

    @property
    def amount_due(self) -> Money:
        return self.principal + self.interest


@dataclass(frozen=True)
class AmortizationSchedule:
    monthly_payment: Money
    total_interest: Money
    installments: list[ScheduledInstallment]

    @property
    def total_payable(self) -> Money:
        return self.monthly_payment * len(self.installments)


def monthly_rate(annual_rate: Decimal) -> Decimal:
    return Decimal(annual_rate) / Decimal(100) / Decimal(12)


def monthly_payment(
    principal: Money, annual_rate: Decimal, term_months: int, *, rounding: str = ROUND_HALF_UP
) -> Money:
    """Level monthly payment, rounded to the minor unit (half-up unless *rounding* says otherwise).

    A zero rate divides the principal evenly and rounds down; the final
    installment then picks up the remainder.
    """
    _check_terms(principal, annual_rate, term_months)
    i = monthly_rate(annual_rate)
    if i == 0:
        return Money(principal.minor // term_months, principal.currency)

    with localcontext() as ctx:
        ctx.prec = 40
        growth = (1 + i) ** term_months
        pmt = Decimal(principal.minor) * i * growth / (growth - 1)
        return Money(int(pmt.quantize(Decimal(1), rounding=rounding)), principal.currency)


def _split(
    principal_minor: int, i: Decimal, payment_minor: int, term_months: int
) -> tuple[list[tuple[int, int]], bool]:
    """(interest, principal) per installment, and whether any principal part was capped."""
    parts: list[tuple[int, int]] = []
    capped = False
    balance = principal_minor
    for k in range(1, term_months + 1):
        interest = int((Decimal(balance) * i).quantize(Decimal(1), rounding=ROUND_HALF_UP))
        if k == term_months:
            principal_part = balance
        else:
            ceiling = balance - (term_months - k)
            principal_part = payment_minor - interest
            if principal_part > ceiling:
                capped = True
            principal_part = max(0, min(principal_part, ceiling))
        balance -= principal_part
        parts.append((interest, principal_part))
    return parts, capped


def build_schedule(
    principal: Money,
    annual_rate: Decimal,
    term_months: int,
    anchor: date,
) -> AmortizationSchedule:
    """Generate the full repayment schedule.

    Installment *k* falls due ``k`` calendar months after *anchor*
    (month-end clamped, so Jan 31 + 1 month is Feb 28/29).
    """
    payment = monthly_payment(principal, annual_rate, term_months)
    i = monthly_rate(annual_rate)

    parts, capped = _split(principal.minor, i, payment.minor, term_months)
    if capped and i != 0:
        payment = monthly_payment(principal, annual_rate, term_months, rounding=ROUND_DOWN)
        parts, _ = _split(principal.minor, i, payment.minor, term_months)
        logger.info(
            "Half-up payment overpays %s over %d months; using %s",
            principal, term_months, payment,
        )

    installments = [
        ScheduledInstallment(
            number=k,
            due_date=anchor + relativedelta(months=k),
            principal=Money(principal_part, principal.currency),
            interest=Money(interest, principal.currency),
        )
        for k, (interest, principal_part) in enumerate(parts, start=1)
    ]

    # A zero-rate payment rounds down, so M * n can fall short of P
    total_interest = max(payment * term_months - principal, Money.zero(principal.currency))
    logger.debug(
        "Built %d-month schedule for %s at %s%%: payment=%s",
        term_months, principal, annual_rate, payment,
    )
    return AmortizationSchedule(
        monthly_payment=payment,
        total_interest=total_interest,
        installments=installments,
    )


def _check_terms(principal: Money, annual_rate: Decimal, term_months: int) -> None:
    errors = {}
    if not principal.is_positive():
        errors["amount"] = f"Principal must be positive, got {principal}"
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        errors["tenure_months"] = f"Term must be a positive number of months, got {term_months!r}"
    elif "amount" not in errors and principal.minor < term_months:
        errors["amount"] = f"Principal {principal} is too small to spread over {term_months} installments"
    try:
        if Decimal(annual_rate) < 0:
            errors["interest_rate"] = f"Rate cannot be negative, got {annual_rate}"
    except (ArithmeticError, TypeError, ValueError):
        errors["interest_rate"] = f"'{annual_rate}' is not a valid rate"
    if errors:
        raise InvalidTerms(errors)
