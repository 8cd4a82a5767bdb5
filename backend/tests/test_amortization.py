"""Amortization schedule tests: level payment, rounding and calendar anchoring."""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings as hyp_settings, strategies as st

from lendledger.config import Settings
from lendledger.services.amortization import build_schedule, monthly_payment
from lendledger.services.errors import InvalidTerms
from lendledger.services.money import Money, money_sum


def usd(value: str) -> Money:
    return Money.of(value, "USD")


class TestMonthlyPayment:

    def test_ten_thousand_at_six_percent(self):
        assert monthly_payment(usd("10000"), Decimal("6"), 12) == usd("860.66")

    def test_twenty_five_thousand_at_eight_and_a_half(self):
        # P * i(1+i)^n / ((1+i)^n - 1) = 1136.3918... -> 1136.39
        assert monthly_payment(usd("25000"), Decimal("8.5"), 24) == usd("1136.39")

    def test_zero_rate_rounds_down(self):
        assert monthly_payment(usd("1000"), Decimal("0"), 3) == usd("333.33")

    @pytest.mark.parametrize(
        "principal, rate, months, field",
        [
            ("0", "5", 12, "amount"),
            ("-100", "5", 12, "amount"),
            ("1000", "5", 0, "tenure_months"),
            ("1000", "-1", 12, "interest_rate"),
            ("0.05", "5", 12, "amount"),
        ],
    )
    def test_invalid_terms(self, principal, rate, months, field):
        with pytest.raises(InvalidTerms) as exc_info:
            monthly_payment(usd(principal), Decimal(rate), months)
        assert field in exc_info.value.errors


class TestSchedule:

    def test_known_totals(self):
        schedule = build_schedule(usd("25000"), Decimal("8.5"), 24, date(2026, 1, 15))
        assert schedule.monthly_payment == usd("1136.39")
        assert schedule.total_interest == usd("2273.36")
        assert len(schedule.installments) == 24

    def test_first_installment_split(self):
        schedule = build_schedule(usd("10000"), Decimal("6"), 12, date(2026, 1, 15))
        first = schedule.installments[0]
        assert first.number == 1
        assert first.interest == usd("50.00")
        assert first.principal == usd("810.66")
        assert first.amount_due == usd("860.66")

    def test_last_installment_absorbs_remainder(self):
        schedule = build_schedule(usd("1200"), Decimal("12"), 3, date(2026, 1, 15))
        amounts = [inst.amount_due for inst in schedule.installments]
        assert amounts == [usd("408.03"), usd("408.03"), usd("408.02")]

    def test_due_dates_are_whole_months_after_anchor(self):
        schedule = build_schedule(usd("1200"), Decimal("12"), 3, date(2026, 1, 15))
        assert [i.due_date for i in schedule.installments] == [
            date(2026, 2, 15), date(2026, 3, 15), date(2026, 4, 15),
        ]

    def test_month_end_is_clamped(self):
        schedule = build_schedule(usd("1200"), Decimal("12"), 3, date(2026, 1, 31))
        assert [i.due_date for i in schedule.installments] == [
            date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30),
        ]

    def test_leap_year_february(self):
        schedule = build_schedule(usd("1200"), Decimal("12"), 1, date(2028, 1, 31))
        assert schedule.installments[0].due_date == date(2028, 2, 29)

    def test_zero_rate_schedule(self):
        schedule = build_schedule(usd("1000"), Decimal("0"), 3, date(2026, 1, 15))
        assert [i.principal for i in schedule.installments] == [
            usd("333.33"), usd("333.33"), usd("333.34"),
        ]
        assert all(i.interest.is_zero() for i in schedule.installments)
        assert schedule.total_interest.is_zero()

    def test_deterministic(self):
        a = build_schedule(usd("7500"), Decimal("9.99"), 18, date(2026, 5, 1))
        b = build_schedule(usd("7500"), Decimal("9.99"), 18, date(2026, 5, 1))
        assert a == b

    def test_long_tenure_small_loan_stays_payable(self):
        # 100.00 at 2% over 20 years: a half-up payment of 0.51 would clear the
        # principal early and leave a negative final installment
        schedule = build_schedule(usd("100"), Decimal("2"), 240, date(2026, 1, 15))
        installments = schedule.installments
        assert schedule.monthly_payment == usd("0.50")
        assert money_sum((i.principal for i in installments), "USD") == usd("100")
        assert all(i.amount_due.is_positive() for i in installments)
        assert all(not i.principal.is_negative() for i in installments)
        assert installments[-1].amount_due > schedule.monthly_payment

    def test_short_tenure_keeps_half_up_payment(self):
        schedule = build_schedule(usd("1200"), Decimal("12"), 3, date(2026, 1, 15))
        assert schedule.monthly_payment == usd("408.03")


LIMITS = Settings(environment="test", secret_key="test-secret-key")


class TestScheduleProperties:

    @hyp_settings(max_examples=200, deadline=None)
    @given(
        principal_minor=st.integers(
            min_value=int(LIMITS.loan_min_amount * 100),
            max_value=int(LIMITS.loan_max_amount * 100),
        ),
        rate_bp=st.integers(min_value=0, max_value=int(LIMITS.loan_max_interest_rate * 100)),
        months=st.integers(min_value=1, max_value=LIMITS.loan_max_tenure * 12),
    )
    def test_every_installment_is_payable(self, principal_minor, rate_bp, months):
        principal = Money(principal_minor, "USD")
        rate = Decimal(rate_bp) / Decimal(100)
        installments = build_schedule(principal, rate, months, date(2026, 1, 15)).installments

        assert len(installments) == months
        assert money_sum((i.principal for i in installments), "USD") == principal
        for inst in installments:
            assert not inst.principal.is_negative()
            assert not inst.interest.is_negative()
            assert inst.amount_due.is_positive()
        interest = [i.interest for i in installments]
        assert all(later <= earlier for earlier, later in zip(interest, interest[1:]))

    @hyp_settings(max_examples=50, deadline=None)
    @given(
        principal_minor=st.integers(min_value=10_000, max_value=100_000_000),
        rate_bp=st.integers(min_value=1, max_value=3000),
        months=st.integers(min_value=1, max_value=60),
    )
    def test_payment_only_rounded_down_when_needed(self, principal_minor, rate_bp, months):
        principal = Money(principal_minor, "USD")
        rate = Decimal(rate_bp) / Decimal(100)
        schedule = build_schedule(principal, rate, months, date(2026, 1, 15))
        half_up = monthly_payment(principal, rate, months)
        assert schedule.monthly_payment in (half_up, half_up - Money(1, "USD"))
