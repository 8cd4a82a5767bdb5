"""Explicit input validation for loan requests and money-moving calls.

Each validator collects every problem it finds into a field → message map and
raises a single ``ValidationFailed``; nothing is persisted before these pass.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from lendledger.config import Settings
from lendledger.models.ledger import PaymentMethod
from lendledger.models.loan import CollateralType, LoanCategory, LoanPurpose
from lendledger.services.errors import InvalidAmount, ValidationFailed
from lendledger.services.money import Money

TITLE_LENGTH = (5, 100)
DESCRIPTION_LENGTH = (10, 1000)
COLLATERAL_DESCRIPTION_LENGTH = (10, 500)
REASON_MAX_LENGTH = 500
TENURE_UNITS = ("months", "years")


@dataclass
class Collateral:
    type: CollateralType
    description: str
    value: Money


@dataclass
class LoanTerms:
    title: str
    description: str
    purpose: LoanPurpose
    amount: Money
    interest_rate: Decimal
    tenure_months: int
    category: LoanCategory = LoanCategory.UNSECURED
    collateral: Collateral | None = None


# ── Helpers ─────────────────────────────────────────────────────────────


def _text(errors: dict, data: Mapping, key: str, bounds: tuple[int, int], label: str) -> str | None:
    raw = data.get(key)
    if raw is None:
        errors[key] = f"{label} is required"
        return None
    if not isinstance(raw, str):
        errors[key] = f"{label} must be text"
        return None
    value = raw.strip()
    lo, hi = bounds
    if not lo <= len(value) <= hi:
        errors[key] = f"{label} must be between {lo} and {hi} characters"
        return None
    return value


def _decimal(errors: dict, data: Mapping, key: str, label: str) -> Decimal | None:
    raw = data.get(key)
    if raw is None:
        errors[key] = f"{label} is required"
        return None
    if isinstance(raw, (bool, float)):
        errors[key] = f"{label} must be a decimal string or integer"
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        errors[key] = f"{label} must be numeric"
        return None
    if not value.is_finite():
        errors[key] = f"{label} must be numeric"
        return None
    return value


def _enum(errors: dict, data: Mapping, key: str, enum_cls, label: str, default=None):
    raw = data.get(key, default)
    if raw is None:
        errors[key] = f"{label} is required"
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errors[key] = f"Invalid {label.lower()}; expected one of: {allowed}"
        return None


def _money(errors: dict, key: str, value: Decimal | None, currency: str) -> Money | None:
    if value is None:
        return None
    try:
        return Money.of(value, currency)
    except InvalidAmount as exc:
        errors[key] = exc.errors.get("amount", str(exc))
        return None


# ── Loan requests ───────────────────────────────────────────────────────


def validate_loan_terms(data: Mapping[str, Any], settings: Settings) -> LoanTerms:
    """Validate a loan request payload into ``LoanTerms``.

    Tenure may be given in months or years (``tenure_unit``); it is stored
    as months.  Collateral is required exactly when the loan is secured.
    """
    errors: dict[str, str] = {}
    currency = str(data.get("currency") or settings.default_currency).upper()

    title = _text(errors, data, "title", TITLE_LENGTH, "Title")
    description = _text(errors, data, "description", DESCRIPTION_LENGTH, "Description")
    purpose = _enum(errors, data, "purpose", LoanPurpose, "Purpose")
    category = _enum(errors, data, "category", LoanCategory, "Category", default=LoanCategory.UNSECURED.value)

    amount_value = _decimal(errors, data, "amount", "Amount")
    if amount_value is not None and not (
        settings.loan_min_amount <= amount_value <= settings.loan_max_amount
    ):
        errors["amount"] = (
            f"Amount must be between {settings.loan_min_amount} and {settings.loan_max_amount}"
        )
        amount_value = None
    amount = _money(errors, "amount", amount_value, currency)

    rate = _decimal(errors, data, "interest_rate", "Interest rate")
    if rate is not None and not (0 <= rate <= settings.loan_max_interest_rate):
        errors["interest_rate"] = (
            f"Interest rate must be between 0% and {settings.loan_max_interest_rate}%"
        )
        rate = None

    tenure_months = None
    unit = data.get("tenure_unit") or "months"
    if unit not in TENURE_UNITS:
        errors["tenure_unit"] = "Tenure unit must be months or years"
    tenure = data.get("tenure", data.get("tenure_months"))
    if isinstance(tenure, bool) or not isinstance(tenure, int):
        errors["tenure"] = "Tenure must be a whole number"
    elif not 1 <= tenure <= settings.loan_max_tenure:
        errors["tenure"] = f"Tenure must be between 1 and {settings.loan_max_tenure}"
    elif unit in TENURE_UNITS:
        tenure_months = tenure * 12 if unit == "years" else tenure

    collateral = None
    if category == LoanCategory.SECURED:
        collateral = _validate_collateral(errors, data.get("collateral"), currency)

    if errors:
        raise ValidationFailed(errors)

    return LoanTerms(
        title=title,
        description=description,
        purpose=purpose,
        amount=amount,
        interest_rate=rate,
        tenure_months=tenure_months,
        category=category,
        collateral=collateral,
    )


def _validate_collateral(errors: dict, raw: Any, currency: str) -> Collateral | None:
    if not isinstance(raw, Mapping):
        errors["collateral"] = "Collateral is required for secured loans"
        return None
    nested: dict[str, str] = {}
    ctype = _enum(nested, raw, "type", CollateralType, "Collateral type")
    desc = _text(nested, raw, "description", COLLATERAL_DESCRIPTION_LENGTH, "Collateral description")
    value = _decimal(nested, raw, "value", "Collateral value")
    if value is not None and value < 0:
        nested["value"] = "Collateral value cannot be negative"
        value = None
    money = _money(nested, "value", value, currency)
    for key, msg in nested.items():
        errors[f"collateral.{key}"] = msg
    if nested:
        return None
    return Collateral(type=ctype, description=desc, value=money)


LOCKED_FIELDS = frozenset({"status", "borrower_id", "funded_amount", "contributions", "currency"})
TENURE_KEYS = ("tenure", "tenure_months", "tenure_unit")


def validate_draft_update(
    changes: Mapping[str, Any], current: Mapping[str, Any], settings: Settings
) -> LoanTerms:
    """Validate a partial update of a draft loan.

    *changes* is overlaid on the loan's *current* terms and the result is
    validated as a whole.  Status, borrower, currency and funding fields can
    never be changed this way.
    """
    locked = LOCKED_FIELDS & set(changes)
    if locked:
        raise ValidationFailed({k: "Field cannot be changed" for k in sorted(locked)})
    if not changes:
        raise ValidationFailed("No changes supplied")
    if "tenure_unit" in changes and "tenure" not in changes:
        raise ValidationFailed({"tenure": "Tenure is required when tenure_unit is given"})
    merged = dict(current)
    if {"tenure", "tenure_months"} & set(changes):
        for key in TENURE_KEYS:
            merged.pop(key, None)
    merged.update(changes)
    return validate_loan_terms(merged, settings)


# ── Money-moving calls ──────────────────────────────────────────────────


def parse_amount(value: Any, currency: str, field_name: str = "amount") -> Money:
    """Parse a positive amount in *currency*; ``InvalidAmount`` otherwise."""
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmount(
                f"Expected an amount in {currency}, got {value.currency}", field=field_name
            )
        return value.require_positive(field_name)
    try:
        money = Money.of(value, currency)
    except InvalidAmount as exc:
        raise InvalidAmount(exc.errors.get("amount", str(exc)), field=field_name) from None
    return money.require_positive(field_name)


def validate_reason(reason: Any, label: str = "Reason") -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationFailed({"reason": f"{label} is required"})
    reason = reason.strip()
    if len(reason) > REASON_MAX_LENGTH:
        raise ValidationFailed({"reason": f"{label} must be at most {REASON_MAX_LENGTH} characters"})
    return reason


def validate_payment_method(value: Any) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationFailed(
            {"payment_method": f"Invalid payment method; expected one of: {allowed}"}
        ) from None


def validate_idempotency_key(key: Any) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationFailed({"idempotency_key": "Idempotency key is required"})
    key = key.strip()
    if len(key) > 128:
        raise ValidationFailed({"idempotency_key": "Idempotency key must be at most 128 characters"})
    return key
