"""Repayment recording, settlement to lenders, and late-fee assessment.

A borrower repayment is a ``loan-repayment`` transaction from the borrower to
the loan's settlement party (``loan:<id>``), matched to the oldest unpaid
installment.  When it completes, the installment is marked paid and its net
amount is passed on to the loan's lenders, one completed child transaction
per lender, split by the configured allocation policy:

- ``pro_rata``: by each lender's share of the principal (largest remainder)
- ``oldest_first``: everything to the earliest contributor
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.config import Settings
from lendledger.models.ledger import (
    LedgerTransaction,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)
from lendledger.models.loan import Installment, InstallmentStatus, Loan, LoanStatus
from lendledger.services import loan_lifecycle, transaction_ledger
from lendledger.services.clock import Clock
from lendledger.services.errors import (
    IllegalTransition,
    InvalidAmount,
    LoanNotActive,
    RepaymentInProgress,
    ValidationFailed,
)
from lendledger.services.money import Money
from lendledger.services.principal import Principal

logger = logging.getLogger(__name__)


# ── Matching ────────────────────────────────────────────────────────────


def oldest_unpaid(loan: Loan) -> Installment | None:
    for inst in sorted(loan.installments, key=lambda i: i.number):
        if inst.status != InstallmentStatus.PAID:
            return inst
    return None


def installment_by_number(loan: Loan, number: int | None) -> Installment | None:
    for inst in loan.installments:
        if inst.number == number:
            return inst
    return None


def is_repayment(tx: LedgerTransaction) -> bool:
    """Borrower → settlement repayment (not one of its distribution legs)."""
    return (
        tx.tx_type == TransactionType.LOAN_REPAYMENT
        and tx.loan_id is not None
        and tx.parent_id is None
    )


def processing_fee(amount: Money, method: PaymentMethod, settings: Settings) -> Money:
    rate = settings.processing_fee_rates.get(method.value)
    if not rate:
        return Money.zero(amount.currency)
    return amount.percent(rate, rounding=ROUND_HALF_UP)


# ── Recording ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RecordedRepayment:
    transaction: LedgerTransaction
    created: bool


async def record_repayment(
    db: AsyncSession,
    loan: Loan,
    principal: Principal,
    *,
    installment_number: int | None,
    amount: Money,
    payment_method: PaymentMethod,
    idempotency_key: str,
    settings: Settings,
    clock: Clock,
) -> RecordedRepayment:
    """Create the pending repayment for the oldest unpaid installment.

    A second call with the same idempotency key returns the first call's
    transaction unless that one failed, in which case a new attempt is
    recorded and the key moves to it.
    """
    loan_lifecycle.require_borrower(loan, principal, "repay")

    existing = await transaction_ledger.find_idempotent(db, principal.id, idempotency_key)
    if existing is not None:
        if existing.loan_id != loan.id:
            raise ValidationFailed(
                {"idempotency_key": f"Key already used for {existing.reference}"}
            )
        logger.info("Idempotent replay of %s for key %s", existing.reference, idempotency_key)
        return RecordedRepayment(transaction=existing, created=False)

    if loan.status != LoanStatus.ACTIVE:
        raise LoanNotActive(f"Loan {loan.id} is {loan.status.value}, not active", loan_id=loan.id)

    inst = oldest_unpaid(loan)
    if inst is None:
        raise LoanNotActive(f"Loan {loan.id} has no unpaid installments", loan_id=loan.id)
    if installment_number is not None and installment_number != inst.number:
        raise ValidationFailed(
            {"installment_number": f"Next installment due is #{inst.number}"}
        )
    if inst.transaction_id is not None:
        raise RepaymentInProgress(
            f"Installment #{inst.number} already has a repayment in progress",
            loan_id=loan.id,
            transaction_id=inst.transaction_id,
        )

    due = Money(inst.amount_due_minor, loan.currency)
    if amount != due:
        raise InvalidAmount(f"Installment #{inst.number} requires exactly {due}, got {amount}")

    tx = await transaction_ledger.append_transaction(
        db,
        clock=clock,
        tx_type=TransactionType.LOAN_REPAYMENT,
        from_party=principal.id,
        to_party=loan.settlement_party,
        amount=amount,
        processing_fee=processing_fee(amount, payment_method, settings),
        loan_id=loan.id,
        installment_number=inst.number,
        payment_method=payment_method,
        description=f"Repayment #{inst.number} for loan: {loan.title}",
        performed_by=principal.id,
    )
    inst.transaction_id = tx.id
    await transaction_ledger.bind_idempotency_key(
        db, principal.id, idempotency_key, tx, now=clock.now()
    )
    return RecordedRepayment(transaction=tx, created=True)


# ── Settlement ──────────────────────────────────────────────────────────


def allocate_repayment(
    net: Money, contributions: list[tuple[str, int]], policy: str
) -> list[tuple[str, Money]]:
    """Split *net* across ``(lender, contributed_minor)`` pairs, oldest first."""
    if not contributions:
        raise ValidationFailed({"loan": "Loan has no lenders to repay"})
    if policy == "oldest_first":
        return [(contributions[0][0], net)]
    if policy != "pro_rata":
        raise ValidationFailed({"repayment_allocation": f"Unknown policy '{policy}'"})
    shares = net.allocate_by_ratios([minor for _, minor in contributions])
    return [(lender, share) for (lender, _), share in zip(contributions, shares)]


async def settle_repayment(
    db: AsyncSession,
    loan: Loan,
    tx: LedgerTransaction,
    *,
    actor: str | None,
    settings: Settings,
    clock: Clock,
) -> list[LedgerTransaction]:
    """Mark the installment paid and distribute the net amount to lenders."""
    inst = installment_by_number(loan, tx.installment_number)
    if inst is None:
        raise ValidationFailed(
            {"installment_number": f"Loan {loan.id} has no installment #{tx.installment_number}"}
        )
    now = clock.now()
    inst.status = InstallmentStatus.PAID
    inst.paid_at = now
    inst.transaction_id = tx.id

    contributions = [(c.lender_id, c.amount_minor) for c in loan.contributions]
    legs = []
    for lender, share in allocate_repayment(tx.net_amount, contributions, settings.repayment_allocation):
        if share.is_zero():
            continue
        leg = await transaction_ledger.append_transaction(
            db,
            clock=clock,
            tx_type=TransactionType.LOAN_REPAYMENT,
            from_party=tx.to_party,
            to_party=lender,
            amount=share,
            loan_id=loan.id,
            installment_number=tx.installment_number,
            parent_id=tx.id,
            description=f"Lender share of {tx.reference}",
            performed_by=actor,
        )
        await transaction_ledger.settle_immediately(db, leg, clock=clock, actor=actor)
        legs.append(leg)

    logger.info(
        "Settled %s on loan %d installment #%d across %d lender(s)",
        tx.reference, loan.id, inst.number, len(legs),
    )
    await loan_lifecycle.complete_if_repaid(db, loan, actor=actor, clock=clock)
    return legs


def release_installment(loan: Loan, tx: LedgerTransaction) -> None:
    """Free the installment held by a repayment that failed or was cancelled."""
    inst = installment_by_number(loan, tx.installment_number)
    if inst is not None and inst.transaction_id == tx.id and inst.status != InstallmentStatus.PAID:
        inst.transaction_id = None
        logger.info("Released installment #%d of loan %d from %s", inst.number, loan.id, tx.reference)


async def refund_repayment(
    db: AsyncSession,
    loan: Loan,
    tx: LedgerTransaction,
    *,
    actor: str,
    reason: str,
    clock: Clock,
) -> LedgerTransaction:
    """Reverse a settled repayment: refund every lender leg, then the repayment.

    The installment goes back to unpaid so it can be collected again.
    """
    if tx.status != TransactionStatus.COMPLETED:
        raise IllegalTransition(
            f"Cannot move {tx.reference} from {tx.status.value} to refunded",
            transaction_id=tx.id,
        )
    if loan.status != LoanStatus.ACTIVE:
        raise LoanNotActive(
            f"Repayments on a {loan.status.value} loan cannot be refunded", loan_id=loan.id
        )

    details = f"Refund: {reason}"
    for leg in await transaction_ledger.child_transactions(db, tx.id):
        if leg.status == TransactionStatus.COMPLETED:
            await transaction_ledger.transition(
                db, leg, TransactionStatus.REFUNDED, clock=clock, actor=actor, details=details
            )
    await transaction_ledger.transition(
        db, tx, TransactionStatus.REFUNDED, clock=clock, actor=actor, details=details
    )

    inst = installment_by_number(loan, tx.installment_number)
    if inst is not None and inst.transaction_id == tx.id:
        inst.status = InstallmentStatus.OVERDUE if inst.late_fee_minor else InstallmentStatus.PENDING
        inst.paid_at = None
        inst.transaction_id = None
    await db.flush()
    return tx


# ── Late fees ───────────────────────────────────────────────────────────


@dataclass
class LateFeeReport:
    as_of: date
    loans_checked: int = 0
    marked_overdue: int = 0
    fees_assessed: int = 0
    fees_by_currency: dict[str, Money] = field(default_factory=dict)

    def add_fee(self, fee: Money) -> None:
        current = self.fees_by_currency.get(fee.currency, Money.zero(fee.currency))
        self.fees_by_currency[fee.currency] = current + fee
        self.fees_assessed += 1

    def merge(self, other: "LateFeeReport") -> None:
        self.loans_checked += other.loans_checked
        self.marked_overdue += other.marked_overdue
        for fee in other.fees_by_currency.values():
            current = self.fees_by_currency.get(fee.currency, Money.zero(fee.currency))
            self.fees_by_currency[fee.currency] = current + fee
        self.fees_assessed += other.fees_assessed


def overdue_cutoff(as_of: date, settings: Settings) -> date:
    """Installments due strictly before this date are past their grace period."""
    return as_of - timedelta(days=settings.late_fee_grace_days)


async def loans_with_overdue_installments(
    db: AsyncSession, as_of: date, settings: Settings
) -> list[int]:
    result = await db.execute(
        select(Installment.loan_id)
        .join(Loan, Loan.id == Installment.loan_id)
        .where(
            Loan.status == LoanStatus.ACTIVE,
            Installment.status != InstallmentStatus.PAID,
            Installment.due_date < overdue_cutoff(as_of, settings),
        )
        .distinct()
        .order_by(Installment.loan_id)
    )
    return list(result.scalars().all())


def late_fee_for(inst: Installment, currency: str, settings: Settings) -> Money:
    base = Money(inst.principal_minor + inst.interest_minor, currency)
    minimum = Money.of(settings.late_fee_minimum, currency)
    return max(minimum, base.percent(settings.late_fee_rate, rounding=ROUND_HALF_UP))


async def assess_loan_late_fees(
    db: AsyncSession, loan: Loan, as_of: date, report: LateFeeReport, *, settings: Settings
) -> None:
    """Mark *loan*'s late installments overdue and charge each one fee, once."""
    report.loans_checked += 1
    if loan.status != LoanStatus.ACTIVE:
        return
    cutoff = overdue_cutoff(as_of, settings)
    for inst in loan.installments:
        if inst.status == InstallmentStatus.PAID or inst.due_date >= cutoff:
            continue
        if inst.transaction_id is not None:
            continue
        if inst.status == InstallmentStatus.PENDING:
            inst.status = InstallmentStatus.OVERDUE
            report.marked_overdue += 1
        if inst.late_fee_minor == 0:
            fee = late_fee_for(inst, loan.currency, settings)
            inst.late_fee_minor = fee.minor
            report.add_fee(fee)
            logger.info(
                "Late fee %s on loan %d installment #%d (due %s)",
                fee, loan.id, inst.number, inst.due_date,
            )
    await db.flush()
