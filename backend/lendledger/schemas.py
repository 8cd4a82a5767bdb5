"""Pydantic schemas for request/response validation.

Request bodies are deliberately loose: field rules (lengths, bounds, the
secured-loan collateral requirement) are enforced by the lending core so
every caller gets the same per-field errors.  Responses are built from the
core's view objects with ``from_attributes``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, Field

from lendledger.services.money import Money


# ── Money ─────────────────────────────────────────────

def _money_out(value: Any) -> Any:
    if isinstance(value, Money):
        return {"amount": f"{value.to_decimal()}", "currency": value.currency}
    return value


class MoneyOut(BaseModel):
    amount: str
    currency: str


MoneyField = Annotated[MoneyOut, BeforeValidator(_money_out)]


# ── Loans ─────────────────────────────────────────────

class CollateralIn(BaseModel):
    type: Optional[str] = None
    description: Optional[str] = None
    value: Optional[Decimal] = None


class LoanCreate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    purpose: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    interest_rate: Optional[Decimal] = None
    tenure: Optional[int] = None
    tenure_unit: Optional[str] = None
    collateral: Optional[CollateralIn] = None


class LoanUpdate(LoanCreate):
    """Partial update of a draft; unknown fields are passed through and rejected by the core."""

    model_config = {"extra": "allow"}


class FundRequest(BaseModel):
    amount: Decimal
    lender_id: Optional[str] = Field(None, max_length=64)


class RepaymentRequest(BaseModel):
    amount: Decimal
    payment_method: str
    installment_number: Optional[int] = Field(None, ge=1)
    idempotency_key: Optional[str] = Field(None, max_length=128)


class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class CollateralResponse(BaseModel):
    type: str
    description: str
    value: MoneyField

    model_config = {"from_attributes": True}


class ContributionResponse(BaseModel):
    lender_id: str
    amount: MoneyField
    transaction_id: Optional[int] = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class InstallmentResponse(BaseModel):
    number: int
    due_date: date
    principal: MoneyField
    interest: MoneyField
    late_fee: MoneyField
    amount_due: MoneyField
    status: str
    paid_at: Optional[datetime] = None
    transaction_id: Optional[int] = None

    model_config = {"from_attributes": True}


class TimelineEntryResponse(BaseModel):
    status: str
    note: str
    performed_by: Optional[str] = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class LoanResponse(BaseModel):
    id: int
    borrower_id: str
    title: str
    description: str
    purpose: str
    category: str
    collateral: Optional[CollateralResponse] = None
    amount: MoneyField
    interest_rate: Decimal
    tenure_months: int
    status: str
    funded_amount: MoneyField
    remaining_amount: MoneyField
    funded_percentage: Decimal
    monthly_payment: Optional[MoneyField] = None
    total_interest: Optional[MoneyField] = None
    contributions: list[ContributionResponse]
    schedule: list[InstallmentResponse]
    timeline: list[TimelineEntryResponse]
    created_at: datetime
    updated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class LoanListResponse(BaseModel):
    items: list[LoanResponse]
    total: int
    page: int
    limit: int

    model_config = {"from_attributes": True}


class FundingResponse(BaseModel):
    accepted: MoneyField
    funded_amount: MoneyField
    remaining: MoneyField
    fully_funded: bool
    loan_status: str
    transaction_id: int
    transaction_reference: str

    model_config = {"from_attributes": True}


# ── Transactions ──────────────────────────────────────

class CompleteRequest(BaseModel):
    gateway_reference: Optional[str] = Field(None, max_length=100)


class AuditEntryResponse(BaseModel):
    action: str
    previous_status: Optional[str] = None
    new_status: str
    performed_by: Optional[str] = None
    details: Optional[str] = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    id: int
    reference: str
    type: str
    from_party: str
    to_party: str
    amount: MoneyField
    processing_fee: MoneyField
    net_amount: MoneyField
    status: str
    loan_id: Optional[int] = None
    installment_number: Optional[int] = None
    parent_id: Optional[int] = None
    payment_method: Optional[str] = None
    gateway_provider: str
    gateway_reference: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    audit_trail: list[AuditEntryResponse]

    model_config = {"from_attributes": True}


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    limit: int

    model_config = {"from_attributes": True}


class TransactionStatResponse(BaseModel):
    key: Optional[str] = None
    count: int
    total: MoneyField
    average: MoneyField

    model_config = {"from_attributes": True}


class TransactionStatsResponse(BaseModel):
    groups: list[TransactionStatResponse]
    summary: dict[str, TransactionStatResponse]

    model_config = {"from_attributes": True}


class BalanceResponse(BaseModel):
    party: str
    balances: list[MoneyField]


class BalanceCheckResponse(BaseModel):
    party: str
    cached: MoneyField
    replayed: MoneyField
    consistent: bool

    model_config = {"from_attributes": True}


class LateFeeRequest(BaseModel):
    as_of: Optional[date] = None


class LateFeeReportResponse(BaseModel):
    as_of: date
    loans_checked: int
    marked_overdue: int
    fees_assessed: int
    fees: list[MoneyField]
