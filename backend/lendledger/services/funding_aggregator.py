"""Accumulates lender contributions toward a loan's principal.

The check of the remaining amount and the increment of ``funded_amount`` run
inside one DB transaction on a loan row that the caller has locked
(in-process lock plus ``SELECT ... FOR UPDATE``).  The loan's version column
and the ``funded ≤ amount`` / unique (loan, lender) constraints back this up
against writers the lock does not cover.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.ledger import LedgerTransaction, TransactionType
from lendledger.models.loan import FundingContribution, Loan, LoanStatus
from lendledger.services import transaction_ledger
from lendledger.services.clock import Clock
from lendledger.services.errors import (
    DuplicateLender,
    NotFundable,
    OverfundingRejected,
    ValidationFailed,
)
from lendledger.services.money import Money

logger = logging.getLogger(__name__)

FUNDABLE_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.APPROVED})


@dataclass(frozen=True)
class ContributionResult:
    accepted: Money
    funded_amount: Money
    fully_funded: bool
    contribution: FundingContribution
    transaction: LedgerTransaction


def check_contribution(loan: Loan, lender_id: str, amount: Money) -> None:
    """Raise if *lender_id* may not contribute *amount* to *loan* right now."""
    if loan.status not in FUNDABLE_STATUSES:
        raise NotFundable(
            f"Loan {loan.id} is {loan.status.value} and not open for funding",
            loan_id=loan.id,
        )
    if lender_id == loan.borrower_id:
        raise ValidationFailed({"lender_id": "Borrowers cannot fund their own loan"})
    amount.require_positive()
    if amount.currency != loan.currency:
        raise ValidationFailed(
            {"amount": f"Loan is funded in {loan.currency}, got {amount.currency}"}
        )
    if any(c.lender_id == lender_id for c in loan.contributions):
        raise DuplicateLender(
            f"Lender {lender_id} has already funded loan {loan.id}", loan_id=loan.id
        )
    remaining = loan.remaining_amount
    if amount > remaining:
        raise OverfundingRejected(
            f"Maximum funding amount is {remaining}", loan_id=loan.id, remaining=str(remaining)
        )


async def contribute(
    db: AsyncSession,
    loan: Loan,
    lender_id: str,
    amount: Money,
    *,
    clock: Clock,
) -> ContributionResult:
    """Accept *amount* from *lender_id* and move it to the borrower.

    The contribution row, the ``funded_amount`` increment and the completed
    ``loan-funding`` transaction are written together; nothing is written if
    any check fails.
    """
    check_contribution(loan, lender_id, amount)

    tx = await transaction_ledger.append_transaction(
        db,
        clock=clock,
        tx_type=TransactionType.LOAN_FUNDING,
        from_party=lender_id,
        to_party=loan.borrower_id,
        amount=amount,
        loan_id=loan.id,
        description=f"Funding for loan: {loan.title}",
        performed_by=lender_id,
    )
    await transaction_ledger.settle_immediately(db, tx, clock=clock, actor=lender_id)

    now = clock.now()
    contribution = FundingContribution(
        lender_id=lender_id,
        amount_minor=amount.minor,
        transaction_id=tx.id,
        contributed_at=now,
    )
    loan.contributions.append(contribution)
    loan.funded_amount_minor += amount.minor
    loan.updated_at = now
    await db.flush()

    fully_funded = loan.funded_amount_minor == loan.amount_minor
    logger.info(
        "Loan %d funded %s by %s (%s/%s)",
        loan.id, amount, lender_id, loan.funded_amount, loan.amount,
    )
    return ContributionResult(
        accepted=amount,
        funded_amount=loan.funded_amount,
        fully_funded=fully_funded,
        contribution=contribution,
        transaction=tx,
    )
