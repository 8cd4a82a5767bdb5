"""Lending core: the service object behind every public operation.

``LendingCore`` is built once with its collaborators (session factory,
settings, clock, payment gateway, lock registry) and owns the unit-of-work
boundary: each mutating operation runs in one DB transaction, under the
in-process locks of the entities it touches (always loan before
transaction), and is retried a bounded number of times when the database
reports a concurrent modification.

Usage:
    core = LendingCore(async_session, settings=settings)
    loan_id = await core.create_loan(principal, payload)
    result = await core.fund_loan(lender, loan_id, "2500.00")
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import select, func as sa_func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from lendledger.config import Settings
from lendledger.models.ledger import LedgerTransaction, TransactionStatus, TransactionType
from lendledger.models.loan import (
    FundingContribution,
    Loan,
    LoanCategory,
    LoanPurpose,
    LoanStatus,
)
from lendledger.services import (
    balance_engine,
    funding_aggregator,
    loan_lifecycle,
    repayments,
    transaction_ledger,
)
from lendledger.services.balance_engine import BalanceCheck
from lendledger.services.clock import Clock, SystemClock, today
from lendledger.services.errors import (
    GatewayTimeout,
    IllegalTransition,
    PermissionDenied,
    PersistenceConflict,
    ValidationFailed,
)
from lendledger.services.locks import KeyedLocks, loan_key, transaction_key
from lendledger.services.money import Money
from lendledger.services.payment_gateway import (
    GatewayError,
    GatewayResult,
    InternalGateway,
    PaymentGateway,
)
from lendledger.services.principal import Principal, Role
from lendledger.services.repayments import LateFeeReport
from lendledger.services.transaction_ledger import TransactionStats
from lendledger.services.validation import (
    LoanTerms,
    parse_amount,
    validate_draft_update,
    validate_idempotency_key,
    validate_loan_terms,
    validate_payment_method,
    validate_reason,
)
from lendledger.services.views import (
    AuditEntryView,
    FundingResult,
    LoanView,
    TransactionView,
    loan_view,
    transaction_view,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 100

LOAN_SORT_COLUMNS = {
    "created_at": Loan.created_at,
    "amount": Loan.amount_minor,
    "interest_rate": Loan.interest_rate,
    "funded_amount": Loan.funded_amount_minor,
}

# Loans a lender may browse before committing money
MARKETPLACE_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED)


# ---------------------------------------------------------------------------
# Query parameters and pages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoanFilters:
    status: LoanStatus | None = None
    purpose: LoanPurpose | None = None
    category: LoanCategory | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    min_rate: Decimal | None = None
    max_rate: Decimal | None = None
    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass(frozen=True)
class LoanPage:
    items: list[LoanView]
    total: int
    page: int
    limit: int


@dataclass(frozen=True)
class TransactionPage:
    items: list[TransactionView]
    total: int
    page: int
    limit: int


def _check_paging(page: int, limit: int) -> None:
    errors = {}
    if page < 1:
        errors["page"] = "Page must be 1 or greater"
    if not 1 <= limit <= MAX_PAGE_SIZE:
        errors["limit"] = f"Limit must be between 1 and {MAX_PAGE_SIZE}"
    if errors:
        raise ValidationFailed(errors)


class LendingCore:
    """Loan funding and settlement ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        locks: KeyedLocks | None = None,
    ):
        self._session_factory = session_factory
        self.settings = settings if settings is not None else Settings()
        self.clock = clock if clock is not None else SystemClock()
        self.gateway = gateway if gateway is not None else InternalGateway()
        self.locks = locks if locks is not None else KeyedLocks()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # ── Units of work ────────────────────────────────────────

    async def _run(
        self,
        name: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        *,
        lock_keys: tuple[str, ...] = (),
    ) -> T:
        """Run *work* in one DB transaction under *lock_keys*.

        Version conflicts and constraint violations roll the transaction back
        and start over in a fresh session; after the last attempt they
        surface as ``PersistenceConflict``.  Domain errors are never retried.
        """
        attempts = max(1, self.settings.persistence_retry_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                async with AsyncExitStack() as stack:
                    for key in lock_keys:
                        await stack.enter_async_context(self.locks.hold(key))
                    async with self._session_factory() as db:
                        async with db.begin():
                            return await work(db)
            except (StaleDataError, IntegrityError) as exc:
                if attempt >= attempts:
                    logger.error("%s: giving up after %d conflicting attempts: %s", name, attempts, exc)
                    raise PersistenceConflict(
                        f"{name} conflicted with a concurrent update; retry the request"
                    ) from exc
                logger.warning("%s: persistence conflict (attempt %d/%d): %s", name, attempt, attempts, exc)
                await asyncio.sleep(self.settings.persistence_retry_backoff_ms * attempt / 1000)

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as db:
            return await work(db)

    async def _transaction_loan_id(self, tx_id: int) -> int | None:
        async def peek(db: AsyncSession) -> int | None:
            result = await db.execute(
                select(LedgerTransaction.loan_id).where(LedgerTransaction.id == tx_id)
            )
            return result.scalar_one_or_none()

        return await self._read(peek)

    @staticmethod
    def _lock_keys(tx_id: int, loan_id: int | None) -> tuple[str, ...]:
        if loan_id is None:
            return (transaction_key(tx_id),)
        return (loan_key(loan_id), transaction_key(tx_id))

    def _currency(self, currency: str | None) -> str:
        return (currency or self.settings.default_currency).upper()

    # ── Loans ────────────────────────────────────────────────

    async def create_loan(self, principal: Principal, terms: Mapping[str, Any] | LoanTerms) -> int:
        """Validate *terms* and store a new ``draft`` loan; returns its id."""
        if not (principal.can_borrow or principal.is_admin):
            raise PermissionDenied("Only borrowers can request loans")
        if not isinstance(terms, LoanTerms):
            terms = validate_loan_terms(terms, self.settings)

        async def work(db: AsyncSession) -> int:
            loan = await loan_lifecycle.create_loan(db, principal.id, terms, clock=self.clock)
            return loan.id

        return await self._run("create_loan", work)

    async def update_draft_loan(
        self, principal: Principal, loan_id: int, changes: Mapping[str, Any]
    ) -> LoanView:
        async def work(db: AsyncSession) -> LoanView:
            loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
            loan_lifecycle.require_borrower(loan, principal, "update")
            loan_lifecycle.require_draft(loan, "updated")
            terms = validate_draft_update(changes, loan_lifecycle.current_terms(loan), self.settings)
            await loan_lifecycle.update_draft(db, loan, principal, terms, clock=self.clock)
            return loan_view(loan)

        return await self._run("update_draft_loan", work, lock_keys=(loan_key(loan_id),))

    async def _loan_action(
        self,
        name: str,
        loan_id: int,
        action: Callable[[AsyncSession, Loan], Awaitable[Loan]],
    ) -> LoanView:
        async def work(db: AsyncSession) -> LoanView:
            loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
            await action(db, loan)
            return loan_view(loan)

        return await self._run(name, work, lock_keys=(loan_key(loan_id),))

    async def submit_loan(self, principal: Principal, loan_id: int) -> LoanView:
        return await self._loan_action(
            "submit_loan", loan_id,
            lambda db, loan: loan_lifecycle.submit_loan(db, loan, principal, clock=self.clock),
        )

    async def delete_draft_loan(self, principal: Principal, loan_id: int) -> LoanView:
        return await self._loan_action(
            "delete_draft_loan", loan_id,
            lambda db, loan: loan_lifecycle.cancel_draft(db, loan, principal, clock=self.clock),
        )

    async def approve_loan(self, principal: Principal, loan_id: int) -> LoanView:
        return await self._loan_action(
            "approve_loan", loan_id,
            lambda db, loan: loan_lifecycle.approve_loan(db, loan, principal, clock=self.clock),
        )

    async def reject_loan(self, principal: Principal, loan_id: int, reason: str) -> LoanView:
        return await self._loan_action(
            "reject_loan", loan_id,
            lambda db, loan: loan_lifecycle.reject_loan(db, loan, principal, reason, clock=self.clock),
        )

    async def default_loan(self, principal: Principal, loan_id: int, reason: str) -> LoanView:
        return await self._loan_action(
            "default_loan", loan_id,
            lambda db, loan: loan_lifecycle.default_loan(db, loan, principal, reason, clock=self.clock),
        )

    # ── Funding ──────────────────────────────────────────────

    async def fund_loan(
        self,
        principal: Principal,
        loan_id: int,
        amount: Money | Decimal | str | int,
        lender_id: str | None = None,
    ) -> FundingResult:
        """Commit *amount* from a lender; activates the loan once fully funded."""
        lender = lender_id or principal.id
        if lender != principal.id and not principal.is_admin:
            raise PermissionDenied("Only an administrator can fund on behalf of another lender")
        if not (principal.can_lend or principal.is_admin):
            raise PermissionDenied("Only lenders can fund loans")

        async def work(db: AsyncSession) -> FundingResult:
            loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
            money = parse_amount(amount, loan.currency)
            result = await funding_aggregator.contribute(db, loan, lender, money, clock=self.clock)
            if result.fully_funded:
                await loan_lifecycle.activate_funded_loan(db, loan, actor=lender, clock=self.clock)
            return FundingResult(
                accepted=result.accepted,
                funded_amount=result.funded_amount,
                remaining=loan.remaining_amount,
                fully_funded=result.fully_funded,
                loan_status=loan.status.value,
                transaction_id=result.transaction.id,
                transaction_reference=result.transaction.reference,
            )

        return await self._run("fund_loan", work, lock_keys=(loan_key(loan_id),))

    # ── Repayments ───────────────────────────────────────────

    async def record_repayment(
        self,
        principal: Principal,
        loan_id: int,
        *,
        amount: Money | Decimal | str | int,
        payment_method: str,
        idempotency_key: str,
        installment_number: int | None = None,
    ) -> int:
        """Record a pending repayment of the next installment; returns the transaction id.

        Replaying the same idempotency key returns the original transaction
        id instead of creating a second one.
        """
        method = validate_payment_method(payment_method)
        key = validate_idempotency_key(idempotency_key)

        async def work(db: AsyncSession) -> int:
            loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
            loan_lifecycle.require_borrower(loan, principal, "repay")
            recorded = await repayments.record_repayment(
                db,
                loan,
                principal,
                installment_number=installment_number,
                amount=parse_amount(amount, loan.currency),
                payment_method=method,
                idempotency_key=key,
                settings=self.settings,
                clock=self.clock,
            )
            return recorded.transaction.id

        return await self._run("record_repayment", work, lock_keys=(loan_key(loan_id),))

    # ── Transaction workflow ─────────────────────────────────

    @staticmethod
    def _require_involved(tx: LedgerTransaction, principal: Principal) -> None:
        if principal.is_admin:
            return
        if principal.id not in (tx.from_party, tx.to_party):
            raise PermissionDenied(f"Not a party to transaction {tx.reference}")

    async def _load_for_update(
        self, db: AsyncSession, tx_id: int, loan_id: int | None
    ) -> tuple[Loan | None, LedgerTransaction]:
        loan = None
        if loan_id is not None:
            loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
        tx = await transaction_ledger.get_transaction(db, tx_id, for_update=True)
        return loan, tx

    async def _complete(
        self, db: AsyncSession, loan: Loan | None, tx: LedgerTransaction, *, actor: str, details: str | None
    ) -> None:
        await transaction_ledger.transition(
            db, tx, TransactionStatus.COMPLETED, clock=self.clock, actor=actor, details=details
        )
        if loan is not None and repayments.is_repayment(tx):
            await repayments.settle_repayment(
                db, loan, tx, actor=actor, settings=self.settings, clock=self.clock
            )

    async def process_transaction(self, principal: Principal, tx_id: int) -> TransactionView:
        """Charge a pending transaction through the payment gateway.

        The gateway call runs outside any DB transaction or lock and is
        bounded by ``gateway_timeout_seconds``.  A decline or timeout leaves
        the transaction ``failed``; a timeout additionally raises
        ``GatewayTimeout`` so the caller can retry with the same
        idempotency key.
        """
        loan_id = await self._transaction_loan_id(tx_id)
        lock_keys = self._lock_keys(tx_id, loan_id)

        async def begin(db: AsyncSession) -> tuple:
            _, tx = await self._load_for_update(db, tx_id, loan_id)
            self._require_involved(tx, principal)
            await transaction_ledger.transition(
                db, tx, TransactionStatus.PROCESSING,
                clock=self.clock, actor=principal.id, details=f"Submitted to {self.gateway.name}",
            )
            tx.gateway_provider = self.gateway.name
            await db.flush()
            return tx.payment_method, tx.amount, tx.reference

        method, amount, reference = await self._run("process_transaction", begin, lock_keys=lock_keys)

        timed_out = False
        try:
            result = await asyncio.wait_for(
                self.gateway.charge(method, amount, reference),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            timed_out = True
            result = GatewayResult(
                ok=False, message=f"Gateway timed out after {self.settings.gateway_timeout_seconds}s"
            )
            logger.warning("Gateway %s timed out on %s", self.gateway.name, reference)
        except GatewayError as exc:
            result = GatewayResult(ok=False, message=f"Gateway error: {exc}")
            logger.warning("Gateway %s failed on %s: %s", self.gateway.name, reference, exc)

        async def finish(db: AsyncSession) -> TransactionView:
            loan, tx = await self._load_for_update(db, tx_id, loan_id)
            if tx.status != TransactionStatus.PROCESSING:
                logger.info("%s already settled as %s", tx.reference, tx.status.value)
                return transaction_view(tx)
            if result.ok:
                tx.gateway_reference = result.reference
                await self._complete(
                    db, loan, tx, actor=principal.id, details=f"Gateway reference {result.reference}"
                )
            else:
                await transaction_ledger.transition(
                    db, tx, TransactionStatus.FAILED,
                    clock=self.clock, actor=principal.id, details=result.message or "Declined by gateway",
                )
                if loan is not None:
                    repayments.release_installment(loan, tx)
                    await db.flush()
            return transaction_view(tx)

        view = await self._run("process_transaction", finish, lock_keys=lock_keys)
        if timed_out:
            raise GatewayTimeout(
                f"Payment gateway did not answer for {reference}; retry with the same idempotency key",
                transaction_id=tx_id,
            )
        return view

    async def complete_transaction(
        self, principal: Principal, tx_id: int, gateway_ref: str | None = None
    ) -> TransactionView:
        """Mark a transaction completed with an externally obtained gateway reference."""
        loan_id = await self._transaction_loan_id(tx_id)

        async def work(db: AsyncSession) -> TransactionView:
            loan, tx = await self._load_for_update(db, tx_id, loan_id)
            self._require_involved(tx, principal)
            if tx.status == TransactionStatus.PENDING:
                await transaction_ledger.transition(
                    db, tx, TransactionStatus.PROCESSING, clock=self.clock, actor=principal.id
                )
            if gateway_ref:
                tx.gateway_reference = gateway_ref
            await self._complete(
                db, loan, tx, actor=principal.id,
                details=f"Gateway reference {gateway_ref}" if gateway_ref else None,
            )
            return transaction_view(tx)

        return await self._run("complete_transaction", work, lock_keys=self._lock_keys(tx_id, loan_id))

    async def cancel_transaction(self, principal: Principal, tx_id: int, reason: str) -> TransactionView:
        reason = validate_reason(reason, "Cancellation reason")
        loan_id = await self._transaction_loan_id(tx_id)

        async def work(db: AsyncSession) -> TransactionView:
            loan, tx = await self._load_for_update(db, tx_id, loan_id)
            self._require_involved(tx, principal)
            await transaction_ledger.transition(
                db, tx, TransactionStatus.CANCELLED,
                clock=self.clock, actor=principal.id, details=f"Cancelled: {reason}",
            )
            if loan is not None:
                repayments.release_installment(loan, tx)
                await db.flush()
            return transaction_view(tx)

        return await self._run("cancel_transaction", work, lock_keys=self._lock_keys(tx_id, loan_id))

    async def refund_transaction(self, principal: Principal, tx_id: int, reason: str) -> TransactionView:
        """Administrative refund of a completed transaction.

        Refunding a repayment also refunds its lender legs and reopens the
        installment.  Funding is returned by rejecting the loan instead.
        """
        if not principal.is_admin:
            raise PermissionDenied("Only an administrator can refund transactions")
        reason = validate_reason(reason, "Refund reason")
        loan_id = await self._transaction_loan_id(tx_id)

        async def work(db: AsyncSession) -> TransactionView:
            loan, tx = await self._load_for_update(db, tx_id, loan_id)
            if tx.parent_id is not None:
                raise IllegalTransition(
                    f"{tx.reference} is part of a repayment; refund the repayment instead",
                    transaction_id=tx.id,
                )
            if tx.tx_type == TransactionType.LOAN_FUNDING and loan is not None:
                raise IllegalTransition(
                    f"{tx.reference} funds loan {loan.id}; reject the loan to return funding",
                    transaction_id=tx.id,
                )
            if loan is not None and repayments.is_repayment(tx):
                await repayments.refund_repayment(
                    db, loan, tx, actor=principal.id, reason=reason, clock=self.clock
                )
            else:
                await transaction_ledger.transition(
                    db, tx, TransactionStatus.REFUNDED,
                    clock=self.clock, actor=principal.id, details=f"Refund: {reason}",
                )
            return transaction_view(tx)

        return await self._run("refund_transaction", work, lock_keys=self._lock_keys(tx_id, loan_id))

    # ── Balances ─────────────────────────────────────────────

    async def get_balance(self, party: str, currency: str | None = None) -> Money:
        currency = self._currency(currency)
        return await self._read(lambda db: balance_engine.get_balance(db, party, currency))

    async def get_balances(self, party: str) -> dict[str, Money]:
        return await self._read(lambda db: balance_engine.get_balances(db, party))

    async def recompute_balance(self, party: str, currency: str | None = None) -> Money:
        currency = self._currency(currency)
        return await self._read(lambda db: balance_engine.recompute_balance(db, party, currency))

    async def verify_balance(self, party: str, currency: str | None = None) -> BalanceCheck:
        currency = self._currency(currency)
        return await self._read(lambda db: balance_engine.verify_balance(db, party, currency))

    async def verify_all_balances(self) -> list[BalanceCheck]:
        """Replay the ledger for every cached balance; drifted ones are logged."""
        async def work(db: AsyncSession) -> list[BalanceCheck]:
            checks = []
            for party, currency in await balance_engine.cached_balances(db):
                checks.append(await balance_engine.verify_balance(db, party, currency))
            return checks

        return await self._read(work)

    async def repair_balance(
        self, principal: Principal, party: str, currency: str | None = None
    ) -> BalanceCheck:
        if not principal.is_admin:
            raise PermissionDenied("Only an administrator can repair balances")
        currency = self._currency(currency)
        return await self._run(
            "repair_balance",
            lambda db: balance_engine.repair_balance(db, party, currency, now=self.clock.now()),
            lock_keys=(f"balance:{party}",),
        )

    # ── Loan reads ───────────────────────────────────────────

    @staticmethod
    def _can_view(loan: Loan, principal: Principal) -> bool:
        if principal.is_admin or loan.borrower_id == principal.id:
            return True
        if any(c.lender_id == principal.id for c in loan.contributions):
            return True
        return principal.can_lend and loan.status in MARKETPLACE_STATUSES

    async def get_loan_view(self, principal: Principal, loan_id: int) -> LoanView:
        async def work(db: AsyncSession) -> LoanView:
            loan = await loan_lifecycle.get_loan(db, loan_id)
            if not self._can_view(loan, principal):
                raise PermissionDenied(f"Not allowed to view loan {loan_id}")
            return loan_view(loan)

        return await self._read(work)

    def _visibility(self, principal: Principal):
        if principal.is_admin:
            return None
        funded_by_me = select(FundingContribution.loan_id).where(
            FundingContribution.lender_id == principal.id
        )
        lender_scope = or_(Loan.status.in_(MARKETPLACE_STATUSES), Loan.id.in_(funded_by_me))
        borrower_scope = Loan.borrower_id == principal.id
        if principal.role == Role.BORROWER:
            return borrower_scope
        if principal.role == Role.LENDER:
            return lender_scope
        return or_(borrower_scope, lender_scope)

    async def list_loans(self, principal: Principal, filters: LoanFilters | None = None) -> LoanPage:
        """Page through the loans *principal* may see.

        Borrowers see their own loans; lenders see the marketplace plus the
        loans they funded; ``both`` sees the union and admins see everything.
        Amount bounds are in the default currency's major unit.
        """
        f = filters or LoanFilters()
        _check_paging(f.page, f.limit)
        if f.sort_by not in LOAN_SORT_COLUMNS:
            raise ValidationFailed({"sort_by": f"Must be one of: {', '.join(LOAN_SORT_COLUMNS)}"})
        if f.sort_order not in ("asc", "desc"):
            raise ValidationFailed({"sort_order": "Must be asc or desc"})

        conditions = []
        scope = self._visibility(principal)
        if scope is not None:
            conditions.append(scope)
        if f.status is not None:
            conditions.append(Loan.status == f.status)
        if f.purpose is not None:
            conditions.append(Loan.purpose == f.purpose)
        if f.category is not None:
            conditions.append(Loan.category == f.category)
        currency = self.settings.default_currency
        if f.min_amount is not None:
            conditions.append(Loan.amount_minor >= Money.of(f.min_amount, currency).minor)
        if f.max_amount is not None:
            conditions.append(Loan.amount_minor <= Money.of(f.max_amount, currency).minor)
        if f.min_rate is not None:
            conditions.append(Loan.interest_rate >= f.min_rate)
        if f.max_rate is not None:
            conditions.append(Loan.interest_rate <= f.max_rate)

        column = LOAN_SORT_COLUMNS[f.sort_by]
        order = column.asc() if f.sort_order == "asc" else column.desc()

        async def work(db: AsyncSession) -> LoanPage:
            total = (
                await db.execute(select(sa_func.count(Loan.id)).where(*conditions))
            ).scalar_one()
            result = await db.execute(
                select(Loan)
                .where(*conditions)
                .order_by(order, Loan.id.desc())
                .offset((f.page - 1) * f.limit)
                .limit(f.limit)
            )
            items = [loan_view(loan) for loan in result.scalars().all()]
            return LoanPage(items=items, total=total, page=f.page, limit=f.limit)

        return await self._read(work)

    # ── Transaction reads ────────────────────────────────────

    async def get_transaction(self, principal: Principal, tx_id: int) -> TransactionView:
        async def work(db: AsyncSession) -> TransactionView:
            tx = await transaction_ledger.get_transaction(db, tx_id)
            self._require_involved(tx, principal)
            return transaction_view(tx)

        return await self._read(work)

    async def audit_trail(self, principal: Principal, tx_id: int) -> tuple[AuditEntryView, ...]:
        view = await self.get_transaction(principal, tx_id)
        return view.audit_trail

    def _scoped_party(self, principal: Principal, party: str | None) -> str | None:
        if principal.is_admin:
            return party
        if party is not None and party != principal.id:
            raise PermissionDenied("Only an administrator can query another party's transactions")
        return principal.id

    async def list_transactions(
        self,
        principal: Principal,
        *,
        party: str | None = None,
        tx_type: TransactionType | None = None,
        status: TransactionStatus | None = None,
        loan_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> TransactionPage:
        _check_paging(page, limit)
        scoped = self._scoped_party(principal, party)

        async def work(db: AsyncSession) -> TransactionPage:
            rows, total = await transaction_ledger.list_transactions(
                db, scoped, tx_type=tx_type, status=status, loan_id=loan_id,
                start=start, end=end, page=page, limit=limit,
            )
            return TransactionPage(
                items=[transaction_view(tx) for tx in rows], total=total, page=page, limit=limit
            )

        return await self._read(work)

    async def transaction_stats(
        self,
        principal: Principal,
        *,
        party: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        group_by: str = "type",
    ) -> TransactionStats:
        scoped = self._scoped_party(principal, party) or principal.id
        return await self._read(
            lambda db: transaction_ledger.transaction_stats(
                db, scoped, start=start, end=end, group_by=group_by
            )
        )

    # ── Scheduled ────────────────────────────────────────────

    async def assess_late_fees(self, as_of: date | None = None) -> LateFeeReport:
        """Mark installments past their grace period overdue and charge each one late fee.

        Each loan is assessed in its own unit of work under its loan lock.
        Running it again for the same day changes nothing.
        """
        as_of = as_of or today(self.clock)
        report = LateFeeReport(as_of=as_of)
        loan_ids = await self._read(
            lambda db: repayments.loans_with_overdue_installments(db, as_of, self.settings)
        )
        for loan_id in loan_ids:
            async def work(db: AsyncSession, loan_id: int = loan_id) -> LateFeeReport:
                loan = await loan_lifecycle.get_loan(db, loan_id, for_update=True)
                partial = LateFeeReport(as_of=as_of)
                await repayments.assess_loan_late_fees(db, loan, as_of, partial, settings=self.settings)
                if partial.fees_assessed or partial.marked_overdue:
                    loan.updated_at = self.clock.now()
                    await db.flush()
                return partial

            report.merge(await self._run("assess_late_fees", work, lock_keys=(loan_key(loan_id),)))

        logger.info(
            "Late fees as of %s: %d loans checked, %d installments overdue, %d fees assessed",
            as_of, report.loans_checked, report.marked_overdue, report.fees_assessed,
        )
        return report
