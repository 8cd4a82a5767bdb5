"""Loan state machine.

    draft → pending → approved → funded → active → completed
    draft → cancelled
    pending | approved → rejected
    pending | approved → funded       (full funding only)
    active → defaulted

Every accepted transition appends exactly one timeline entry.  A transition
the current status does not allow raises ``IllegalLoanState`` before anything
is touched.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.ledger import TransactionStatus
from lendledger.models.loan import (
    Installment,
    InstallmentStatus,
    Loan,
    LoanStatus,
    LoanTimelineEntry,
)
from lendledger.services import transaction_ledger
from lendledger.services.amortization import build_schedule
from lendledger.services.clock import Clock
from lendledger.services.errors import (
    IllegalLoanState,
    LoanNotFound,
    NotBorrower,
    PermissionDenied,
)
from lendledger.services.money import Money
from lendledger.services.principal import Principal
from lendledger.services.validation import LoanTerms, validate_reason

logger = logging.getLogger(__name__)

LOAN_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.DRAFT: frozenset({LoanStatus.PENDING, LoanStatus.CANCELLED}),
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.FUNDED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.REJECTED, LoanStatus.FUNDED}),
    LoanStatus.FUNDED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.CANCELLED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def get_loan(db: AsyncSession, loan_id: int, *, for_update: bool = False) -> Loan:
    stmt = select(Loan).where(Loan.id == loan_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    loan = result.scalar_one_or_none()
    if loan is None:
        raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
    return loan


def require_borrower(loan: Loan, principal: Principal, action: str) -> None:
    if principal.id != loan.borrower_id:
        raise NotBorrower(f"Only the borrower can {action} this loan", loan_id=loan.id)


def require_admin(principal: Principal, action: str) -> None:
    if not principal.is_admin:
        raise PermissionDenied(f"Only an administrator can {action} a loan")


def require_draft(loan: Loan, action: str) -> None:
    if loan.status != LoanStatus.DRAFT:
        raise IllegalLoanState(
            f"Only draft loans can be {action}; loan {loan.id} is {loan.status.value}",
            loan_id=loan.id,
        )


def check_transition(loan: Loan, new_status: LoanStatus) -> None:
    if new_status not in LOAN_TRANSITIONS[loan.status]:
        raise IllegalLoanState(
            f"Cannot move loan {loan.id} from {loan.status.value} to {new_status.value}",
            loan_id=loan.id,
            status=loan.status.value,
        )


def _record(loan: Loan, status: LoanStatus, note: str, actor: str | None, now: datetime) -> None:
    loan.timeline.append(
        LoanTimelineEntry(status=status, note=note, performed_by=actor, created_at=now)
    )


def _transition(
    loan: Loan, new_status: LoanStatus, *, note: str, actor: str | None, clock: Clock
) -> None:
    check_transition(loan, new_status)
    now = clock.now()
    previous = loan.status
    loan.status = new_status
    loan.updated_at = now
    if new_status == LoanStatus.PENDING:
        loan.submitted_at = now
    elif new_status in (LoanStatus.APPROVED, LoanStatus.REJECTED):
        loan.decided_at = now
    elif new_status == LoanStatus.FUNDED:
        loan.funded_at = now
    elif new_status in (LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED):
        loan.closed_at = now
    _record(loan, new_status, note, actor, now)
    logger.info("Loan %s: %s → %s (%s)", loan.id, previous.value, new_status.value, note)


# ---------------------------------------------------------------------------
# Borrower actions
# ---------------------------------------------------------------------------

async def create_loan(
    db: AsyncSession, borrower_id: str, terms: LoanTerms, *, clock: Clock
) -> Loan:
    """Persist a new loan request in ``draft``."""
    now = clock.now()
    collateral = terms.collateral
    loan = Loan(
        borrower_id=borrower_id,
        title=terms.title,
        description=terms.description,
        purpose=terms.purpose,
        category=terms.category,
        collateral_type=collateral.type if collateral else None,
        collateral_description=collateral.description if collateral else None,
        collateral_value_minor=collateral.value.minor if collateral else None,
        currency=terms.amount.currency,
        amount_minor=terms.amount.minor,
        interest_rate=terms.interest_rate,
        tenure_months=terms.tenure_months,
        status=LoanStatus.DRAFT,
        funded_amount_minor=0,
        created_at=now,
        updated_at=now,
        contributions=[],
        installments=[],
        timeline=[],
    )
    _record(loan, LoanStatus.DRAFT, "Loan request created", borrower_id, now)
    db.add(loan)
    await db.flush()
    logger.info("Created loan %d for %s: %s", loan.id, borrower_id, terms.amount)
    return loan


def current_terms(loan: Loan) -> dict:
    """The loan's editable terms in the shape ``validate_loan_terms`` accepts."""
    terms = {
        "title": loan.title,
        "description": loan.description,
        "purpose": loan.purpose.value,
        "category": loan.category.value,
        "currency": loan.currency,
        "amount": str(loan.amount.to_decimal()),
        "interest_rate": str(loan.interest_rate),
    }
    if loan.tenure_months % 12 == 0:
        terms.update(tenure=loan.tenure_months // 12, tenure_unit="years")
    else:
        terms.update(tenure=loan.tenure_months, tenure_unit="months")
    if loan.collateral_type is not None:
        terms["collateral"] = {
            "type": loan.collateral_type.value,
            "description": loan.collateral_description,
            "value": str(Money(loan.collateral_value_minor, loan.currency).to_decimal()),
        }
    return terms


async def update_draft(
    db: AsyncSession, loan: Loan, principal: Principal, terms: LoanTerms, *, clock: Clock
) -> Loan:
    """Replace a draft loan's terms."""
    require_borrower(loan, principal, "update")
    require_draft(loan, "updated")
    now = clock.now()
    collateral = terms.collateral
    loan.title = terms.title
    loan.description = terms.description
    loan.purpose = terms.purpose
    loan.category = terms.category
    loan.amount_minor = terms.amount.minor
    loan.interest_rate = terms.interest_rate
    loan.tenure_months = terms.tenure_months
    loan.collateral_type = collateral.type if collateral else None
    loan.collateral_description = collateral.description if collateral else None
    loan.collateral_value_minor = collateral.value.minor if collateral else None
    loan.updated_at = now
    _record(loan, LoanStatus.DRAFT, "Loan request updated", principal.id, now)
    await db.flush()
    return loan


async def submit_loan(db: AsyncSession, loan: Loan, principal: Principal, *, clock: Clock) -> Loan:
    require_borrower(loan, principal, "submit")
    _transition(loan, LoanStatus.PENDING, note="Loan submitted for approval", actor=principal.id, clock=clock)
    await db.flush()
    return loan


async def cancel_draft(db: AsyncSession, loan: Loan, principal: Principal, *, clock: Clock) -> Loan:
    """Withdraw a draft; the row is kept with status ``cancelled``."""
    require_borrower(loan, principal, "delete")
    _transition(loan, LoanStatus.CANCELLED, note="Loan request withdrawn", actor=principal.id, clock=clock)
    await db.flush()
    return loan


# ---------------------------------------------------------------------------
# Administrative actions
# ---------------------------------------------------------------------------

async def approve_loan(db: AsyncSession, loan: Loan, principal: Principal, *, clock: Clock) -> Loan:
    require_admin(principal, "approve")
    if loan.status != LoanStatus.PENDING:
        raise IllegalLoanState(
            f"Only pending loans can be approved; loan {loan.id} is {loan.status.value}",
            loan_id=loan.id,
        )
    _transition(loan, LoanStatus.APPROVED, note="Loan approved", actor=principal.id, clock=clock)
    await db.flush()
    return loan


async def reject_loan(
    db: AsyncSession, loan: Loan, principal: Principal, reason: str, *, clock: Clock
) -> Loan:
    """Reject a pending or approved loan.

    Funding already received is returned: every completed funding
    transaction on the loan moves to ``refunded``.
    """
    require_admin(principal, "reject")
    reason = validate_reason(reason, "Rejection reason")
    check_transition(loan, LoanStatus.REJECTED)

    for contribution in loan.contributions:
        if contribution.transaction_id is None:
            continue
        tx = await transaction_ledger.get_transaction(db, contribution.transaction_id, for_update=True)
        if tx.status == TransactionStatus.COMPLETED:
            await transaction_ledger.transition(
                db, tx, TransactionStatus.REFUNDED,
                clock=clock, actor=principal.id, details=f"Loan rejected: {reason}",
            )

    _transition(loan, LoanStatus.REJECTED, note=f"Loan rejected: {reason}", actor=principal.id, clock=clock)
    await db.flush()
    return loan


async def default_loan(
    db: AsyncSession, loan: Loan, principal: Principal, reason: str, *, clock: Clock
) -> Loan:
    require_admin(principal, "default")
    reason = validate_reason(reason, "Default reason")
    _transition(loan, LoanStatus.DEFAULTED, note=f"Loan defaulted: {reason}", actor=principal.id, clock=clock)
    await db.flush()
    return loan


# ---------------------------------------------------------------------------
# System-driven transitions
# ---------------------------------------------------------------------------

async def activate_funded_loan(
    db: AsyncSession, loan: Loan, *, actor: str | None, clock: Clock
) -> Loan:
    """``→ funded`` then ``→ active``, materializing the repayment schedule.

    Installment *k* falls due *k* months after the funding date.
    """
    if loan.funded_amount_minor != loan.amount_minor:
        raise IllegalLoanState(
            f"Loan {loan.id} is not fully funded ({loan.funded_amount}/{loan.amount})",
            loan_id=loan.id,
        )
    check_transition(loan, LoanStatus.FUNDED)

    schedule = build_schedule(
        loan.amount, loan.interest_rate, loan.tenure_months, clock.now().date()
    )
    _transition(loan, LoanStatus.FUNDED, note="Loan fully funded", actor=actor, clock=clock)

    loan.monthly_payment_minor = schedule.monthly_payment.minor
    loan.total_interest_minor = schedule.total_interest.minor
    for item in schedule.installments:
        loan.installments.append(
            Installment(
                number=item.number,
                due_date=item.due_date,
                principal_minor=item.principal.minor,
                interest_minor=item.interest.minor,
                late_fee_minor=0,
                status=InstallmentStatus.PENDING,
            )
        )
    _transition(
        loan,
        LoanStatus.ACTIVE,
        note=(
            f"Repayment started: {len(schedule.installments)} installments of "
            f"{schedule.monthly_payment}"
        ),
        actor=actor,
        clock=clock,
    )
    await db.flush()
    return loan


async def complete_if_repaid(
    db: AsyncSession, loan: Loan, *, actor: str | None, clock: Clock
) -> bool:
    """Close an active loan whose installments are all paid."""
    if loan.status != LoanStatus.ACTIVE or not loan.installments:
        return False
    if any(inst.status != InstallmentStatus.PAID for inst in loan.installments):
        return False
    _transition(loan, LoanStatus.COMPLETED, note="Loan fully repaid", actor=actor, clock=clock)
    await db.flush()
    return True
