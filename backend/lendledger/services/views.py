"""Immutable snapshots returned by the lending core.

ORM rows never leave a unit of work; every public operation converts what it
touched into one of these while the session is still open.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from lendledger.models.ledger import LedgerTransaction
from lendledger.models.loan import Loan
from lendledger.services.money import Money


@dataclass(frozen=True)
class AuditEntryView:
    action: str
    previous_status: str | None
    new_status: str
    performed_by: str | None
    details: str | None
    timestamp: datetime


@dataclass(frozen=True)
class TransactionView:
    id: int
    reference: str
    type: str
    from_party: str
    to_party: str
    amount: Money
    processing_fee: Money
    net_amount: Money
    status: str
    loan_id: int | None
    installment_number: int | None
    parent_id: int | None
    payment_method: str | None
    gateway_provider: str
    gateway_reference: str | None
    description: str | None
    created_at: datetime
    processed_at: datetime | None
    completed_at: datetime | None
    audit_trail: tuple[AuditEntryView, ...]


@dataclass(frozen=True)
class ContributionView:
    lender_id: str
    amount: Money
    transaction_id: int | None
    timestamp: datetime


@dataclass(frozen=True)
class InstallmentView:
    number: int
    due_date: date
    principal: Money
    interest: Money
    late_fee: Money
    amount_due: Money
    status: str
    paid_at: datetime | None
    transaction_id: int | None


@dataclass(frozen=True)
class TimelineEntryView:
    status: str
    note: str
    performed_by: str | None
    timestamp: datetime


@dataclass(frozen=True)
class CollateralView:
    type: str
    description: str
    value: Money


@dataclass(frozen=True)
class LoanView:
    id: int
    borrower_id: str
    title: str
    description: str
    purpose: str
    category: str
    collateral: CollateralView | None
    amount: Money
    interest_rate: Decimal
    tenure_months: int
    status: str
    funded_amount: Money
    remaining_amount: Money
    funded_percentage: Decimal
    monthly_payment: Money | None
    total_interest: Money | None
    contributions: tuple[ContributionView, ...]
    schedule: tuple[InstallmentView, ...]
    timeline: tuple[TimelineEntryView, ...]
    created_at: datetime
    updated_at: datetime
    version: int


@dataclass(frozen=True)
class FundingResult:
    accepted: Money
    funded_amount: Money
    remaining: Money
    fully_funded: bool
    loan_status: str
    transaction_id: int
    transaction_reference: str


def transaction_view(tx: LedgerTransaction) -> TransactionView:
    return TransactionView(
        id=tx.id,
        reference=tx.reference,
        type=tx.tx_type.value,
        from_party=tx.from_party,
        to_party=tx.to_party,
        amount=tx.amount,
        processing_fee=tx.processing_fee,
        net_amount=tx.net_amount,
        status=tx.status.value,
        loan_id=tx.loan_id,
        installment_number=tx.installment_number,
        parent_id=tx.parent_id,
        payment_method=tx.payment_method.value if tx.payment_method else None,
        gateway_provider=tx.gateway_provider,
        gateway_reference=tx.gateway_reference,
        description=tx.description,
        created_at=tx.created_at,
        processed_at=tx.processed_at,
        completed_at=tx.completed_at,
        audit_trail=tuple(
            AuditEntryView(
                action=entry.action.value,
                previous_status=entry.previous_status.value if entry.previous_status else None,
                new_status=entry.new_status.value,
                performed_by=entry.performed_by,
                details=entry.details,
                timestamp=entry.created_at,
            )
            for entry in tx.audit_trail
        ),
    )


def _optional_money(minor: int | None, currency: str) -> Money | None:
    return Money(minor, currency) if minor is not None else None


def loan_view(loan: Loan) -> LoanView:
    currency = loan.currency
    collateral = None
    if loan.collateral_type is not None:
        collateral = CollateralView(
            type=loan.collateral_type.value,
            description=loan.collateral_description,
            value=Money(loan.collateral_value_minor or 0, currency),
        )
    return LoanView(
        id=loan.id,
        borrower_id=loan.borrower_id,
        title=loan.title,
        description=loan.description,
        purpose=loan.purpose.value,
        category=loan.category.value,
        collateral=collateral,
        amount=loan.amount,
        interest_rate=loan.interest_rate,
        tenure_months=loan.tenure_months,
        status=loan.status.value,
        funded_amount=loan.funded_amount,
        remaining_amount=loan.remaining_amount,
        funded_percentage=loan.funded_percentage,
        monthly_payment=_optional_money(loan.monthly_payment_minor, currency),
        total_interest=_optional_money(loan.total_interest_minor, currency),
        contributions=tuple(
            ContributionView(
                lender_id=c.lender_id,
                amount=Money(c.amount_minor, currency),
                transaction_id=c.transaction_id,
                timestamp=c.contributed_at,
            )
            for c in loan.contributions
        ),
        schedule=tuple(
            InstallmentView(
                number=inst.number,
                due_date=inst.due_date,
                principal=Money(inst.principal_minor, currency),
                interest=Money(inst.interest_minor, currency),
                late_fee=Money(inst.late_fee_minor, currency),
                amount_due=Money(inst.amount_due_minor, currency),
                status=inst.status.value,
                paid_at=inst.paid_at,
                transaction_id=inst.transaction_id,
            )
            for inst in loan.installments
        ),
        timeline=tuple(
            TimelineEntryView(
                status=entry.status.value,
                note=entry.note,
                performed_by=entry.performed_by,
                timestamp=entry.created_at,
            )
            for entry in loan.timeline
        ),
        created_at=loan.created_at,
        updated_at=loan.updated_at,
        version=loan.version,
    )
