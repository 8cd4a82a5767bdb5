"""Tests for loan request and money-moving input validation."""

from decimal import Decimal

import pytest

from lendledger.models.ledger import PaymentMethod
from lendledger.models.loan import CollateralType, LoanCategory, LoanPurpose
from lendledger.services.errors import InvalidAmount, ValidationFailed
from lendledger.services.money import Money
from lendledger.services.validation import (
    parse_amount,
    validate_draft_update,
    validate_idempotency_key,
    validate_loan_terms,
    validate_payment_method,
    validate_reason,
)

from conftest import loan_payload


def _errors(exc_info) -> dict:
    return exc_info.value.errors


# ===================================================================
# Loan terms
# ===================================================================


class TestLoanTerms:

    def test_valid_payload(self, settings):
        terms = validate_loan_terms(loan_payload(), settings)
        assert terms.title == "Second delivery van"
        assert terms.purpose == LoanPurpose.BUSINESS
        assert terms.category == LoanCategory.UNSECURED
        assert terms.amount == Money(1_000_000, "USD")
        assert terms.interest_rate == Decimal("6")
        assert terms.tenure_months == 12
        assert terms.collateral is None

    def test_years_are_stored_as_months(self, settings):
        terms = validate_loan_terms(loan_payload(tenure=2, tenure_unit="years"), settings)
        assert terms.tenure_months == 24

    def test_text_is_stripped(self, settings):
        terms = validate_loan_terms(loan_payload(title="  Roof repair  "), settings)
        assert terms.title == "Roof repair"

    def test_currency_is_taken_from_payload(self, settings):
        terms = validate_loan_terms(loan_payload(currency="eur"), settings)
        assert terms.amount.currency == "EUR"

    def test_collects_every_error(self, settings):
        payload = loan_payload(title="Van", purpose="yacht", interest_rate="75", tenure=0)
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(payload, settings)
        assert set(_errors(exc_info)) == {"title", "purpose", "interest_rate", "tenure"}

    def test_missing_fields(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms({}, settings)
        errors = _errors(exc_info)
        for key in ("title", "description", "purpose", "amount", "interest_rate", "tenure"):
            assert key in errors

    @pytest.mark.parametrize("amount", ["50", "1000001", "abc"])
    def test_amount_out_of_range_or_garbage(self, settings, amount):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(amount=amount), settings)
        assert "amount" in _errors(exc_info)

    def test_float_amount_rejected(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(amount=10000.5), settings)
        assert "amount" in _errors(exc_info)

    def test_amount_precision_rejected(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(amount="1000.001"), settings)
        assert "precision" in _errors(exc_info)["amount"]

    def test_tenure_above_maximum(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(tenure=61), settings)
        assert "tenure" in _errors(exc_info)

    def test_bad_tenure_unit(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(tenure_unit="weeks"), settings)
        assert "tenure_unit" in _errors(exc_info)

    def test_zero_rate_allowed(self, settings):
        terms = validate_loan_terms(loan_payload(interest_rate="0"), settings)
        assert terms.interest_rate == 0


class TestCollateral:

    def test_secured_requires_collateral(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(loan_payload(category="secured"), settings)
        assert "collateral" in _errors(exc_info)

    def test_secured_with_collateral(self, settings):
        payload = loan_payload(
            category="secured",
            collateral={
                "type": "vehicle",
                "description": "2019 cargo van, 80k miles",
                "value": "14000",
            },
        )
        terms = validate_loan_terms(payload, settings)
        assert terms.collateral.type == CollateralType.VEHICLE
        assert terms.collateral.value == Money(1_400_000, "USD")

    def test_nested_errors_are_prefixed(self, settings):
        payload = loan_payload(
            category="secured",
            collateral={"type": "boat", "description": "short", "value": "-1"},
        )
        with pytest.raises(ValidationFailed) as exc_info:
            validate_loan_terms(payload, settings)
        assert set(_errors(exc_info)) == {
            "collateral.type", "collateral.description", "collateral.value",
        }

    def test_unsecured_ignores_collateral(self, settings):
        payload = loan_payload(collateral={"type": "vehicle"})
        assert validate_loan_terms(payload, settings).collateral is None


# ===================================================================
# Draft updates
# ===================================================================


class TestDraftUpdate:

    def test_changes_overlay_current_terms(self, settings):
        terms = validate_draft_update({"amount": "12000"}, loan_payload(), settings)
        assert terms.amount == Money(1_200_000, "USD")
        assert terms.title == "Second delivery van"

    @pytest.mark.parametrize("field", ["status", "borrower_id", "funded_amount", "currency"])
    def test_locked_fields(self, settings, field):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_draft_update({field: "x"}, loan_payload(), settings)
        assert field in _errors(exc_info)

    def test_empty_changes(self, settings):
        with pytest.raises(ValidationFailed):
            validate_draft_update({}, loan_payload(), settings)

    def test_tenure_unit_needs_tenure(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_draft_update({"tenure_unit": "years"}, loan_payload(), settings)
        assert "tenure" in _errors(exc_info)

    def test_new_tenure_replaces_current_unit(self, settings):
        current = loan_payload(tenure=10, tenure_unit="years")
        assert validate_draft_update({"tenure": 36}, current, settings).tenure_months == 36
        assert validate_draft_update({"tenure_months": 36}, current, settings).tenure_months == 36
        assert validate_draft_update({"title": "A new loan title"}, current, settings).tenure_months == 120

    def test_merged_result_is_revalidated(self, settings):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_draft_update({"interest_rate": "51"}, loan_payload(), settings)
        assert "interest_rate" in _errors(exc_info)


# ===================================================================
# Money-moving inputs
# ===================================================================


class TestParseAmount:

    def test_parses_string(self):
        assert parse_amount("860.66", "USD") == Money(86066, "USD")

    def test_accepts_money_in_same_currency(self):
        assert parse_amount(Money(500, "USD"), "USD") == Money(500, "USD")

    def test_rejects_money_in_other_currency(self):
        with pytest.raises(InvalidAmount):
            parse_amount(Money(500, "EUR"), "USD")

    @pytest.mark.parametrize("value", ["0", "-5", "0.001", "nope", 1.5])
    def test_rejects(self, value):
        with pytest.raises(InvalidAmount) as exc_info:
            parse_amount(value, "USD")
        assert "amount" in _errors(exc_info)

    def test_field_name_is_reported(self):
        with pytest.raises(InvalidAmount) as exc_info:
            parse_amount("0", "USD", field_name="contribution")
        assert "contribution" in _errors(exc_info)


class TestSmallValidators:

    def test_reason_is_stripped(self):
        assert validate_reason("  duplicate charge ") == "duplicate charge"

    @pytest.mark.parametrize("reason", [None, "", "   ", "x" * 501])
    def test_bad_reason(self, reason):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_reason(reason)
        assert "reason" in _errors(exc_info)

    def test_payment_method(self):
        assert validate_payment_method("credit-card") == PaymentMethod.CREDIT_CARD

    def test_bad_payment_method(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_payment_method("cash-in-envelope")
        assert "payment_method" in _errors(exc_info)

    def test_idempotency_key(self):
        assert validate_idempotency_key(" rp-001 ") == "rp-001"

    @pytest.mark.parametrize("key", [None, "", "k" * 129])
    def test_bad_idempotency_key(self, key):
        with pytest.raises(ValidationFailed):
            validate_idempotency_key(key)
