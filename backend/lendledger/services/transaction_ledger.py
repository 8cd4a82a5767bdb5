"""Append-only transaction ledger.

Every money movement is a ``LedgerTransaction`` with its own audit trail.
Status changes follow a fixed workflow and each accepted change writes
exactly one audit entry:

    pending → processing → completed → refunded
    pending → cancelled
    processing → failed

Completed transactions are immutable apart from the move to ``refunded``.
Balances are moved by ``balance_engine`` in the same DB transaction as the
status change that completes or refunds a transaction.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, func as sa_func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.ledger import (
    AuditAction,
    IdempotencyKey,
    LedgerTransaction,
    PaymentMethod,
    TransactionAuditEntry,
    TransactionStatus,
    TransactionType,
)
from lendledger.services import balance_engine
from lendledger.services.clock import Clock
from lendledger.services.errors import (
    IllegalTransition,
    InvalidAmount,
    TransactionNotFound,
    ValidationFailed,
)
from lendledger.services.money import Money

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({TransactionStatus.PROCESSING, TransactionStatus.CANCELLED}),
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}

_AUDIT_ACTIONS = {
    TransactionStatus.PROCESSING: AuditAction.PROCESSED,
    TransactionStatus.COMPLETED: AuditAction.COMPLETED,
    TransactionStatus.FAILED: AuditAction.FAILED,
    TransactionStatus.CANCELLED: AuditAction.CANCELLED,
    TransactionStatus.REFUNDED: AuditAction.REFUNDED,
}

MAX_REFERENCE_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Reference generation
# ---------------------------------------------------------------------------

def _new_reference(now: datetime) -> str:
    """TXN-YYYYMMDD-XXXXXXXXXX (random hex suffix)."""
    return f"TXN-{now:%Y%m%d}-{secrets.token_hex(5).upper()}"


async def _unused_reference(db: AsyncSession, now: datetime) -> str:
    for _ in range(MAX_REFERENCE_ATTEMPTS):
        reference = _new_reference(now)
        result = await db.execute(
            select(LedgerTransaction.id).where(LedgerTransaction.reference == reference)
        )
        if result.scalar_one_or_none() is None:
            return reference
    raise RuntimeError("Could not generate a unique transaction reference")


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------

async def append_transaction(
    db: AsyncSession,
    *,
    clock: Clock,
    tx_type: TransactionType,
    from_party: str,
    to_party: str,
    amount: Money,
    processing_fee: Money | None = None,
    loan_id: int | None = None,
    installment_number: int | None = None,
    payment_method: PaymentMethod | None = None,
    parent_id: int | None = None,
    description: str | None = None,
    performed_by: str | None = None,
) -> LedgerTransaction:
    """Record a new transaction in ``pending`` with its ``created`` audit entry."""
    amount.require_positive()
    fee = processing_fee if processing_fee is not None else Money.zero(amount.currency)
    if fee.currency != amount.currency:
        raise InvalidAmount(
            f"Fee currency {fee.currency} does not match {amount.currency}", field="processing_fee"
        )
    if fee.is_negative() or fee > amount:
        raise InvalidAmount(
            f"Processing fee {fee} must be between zero and the amount {amount}",
            field="processing_fee",
        )
    if not from_party or not to_party:
        raise ValidationFailed({"party": "Both parties are required"})
    if from_party == to_party:
        raise ValidationFailed({"to_party": "A transaction needs two distinct parties"})

    now = clock.now()
    tx = LedgerTransaction(
        reference=await _unused_reference(db, now),
        tx_type=tx_type,
        from_party=from_party,
        to_party=to_party,
        currency=amount.currency,
        amount_minor=amount.minor,
        processing_fee_minor=fee.minor,
        net_amount_minor=(amount - fee).minor,
        status=TransactionStatus.PENDING,
        loan_id=loan_id,
        installment_number=installment_number,
        payment_method=payment_method,
        gateway_provider="internal",
        parent_id=parent_id,
        description=description,
        created_at=now,
    )
    tx.audit_trail.append(
        TransactionAuditEntry(
            action=AuditAction.CREATED,
            previous_status=None,
            new_status=TransactionStatus.PENDING,
            performed_by=performed_by,
            details=description,
            created_at=now,
        )
    )
    db.add(tx)
    await db.flush()
    logger.info(
        "Created %s %s: %s → %s %s", tx.tx_type.value, tx.reference, from_party, to_party, amount
    )
    return tx


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def transition(
    db: AsyncSession,
    tx: LedgerTransaction,
    new_status: TransactionStatus,
    *,
    clock: Clock,
    actor: str | None,
    details: str | None = None,
) -> LedgerTransaction:
    """Move *tx* to *new_status*, writing one audit entry.

    Illegal moves raise ``IllegalTransition`` and leave the transaction and
    its audit trail untouched.
    """
    previous = tx.status
    if new_status not in LEGAL_TRANSITIONS[previous]:
        raise IllegalTransition(
            f"Cannot move {tx.reference} from {previous.value} to {new_status.value}",
            transaction_id=tx.id,
        )

    now = clock.now()
    tx.status = new_status
    if new_status == TransactionStatus.PROCESSING:
        tx.processed_at = now
    elif new_status == TransactionStatus.COMPLETED:
        tx.completed_at = now
    tx.audit_trail.append(
        TransactionAuditEntry(
            action=_AUDIT_ACTIONS[new_status],
            previous_status=previous,
            new_status=new_status,
            performed_by=actor,
            details=details,
            created_at=now,
        )
    )
    await db.flush()

    if new_status == TransactionStatus.COMPLETED:
        await balance_engine.apply_transaction(db, tx, now=now)
    elif new_status == TransactionStatus.REFUNDED:
        await balance_engine.apply_transaction(db, tx, now=now, reverse=True)

    logger.info("Transaction %s: %s → %s", tx.reference, previous.value, new_status.value)
    return tx


async def settle_immediately(
    db: AsyncSession,
    tx: LedgerTransaction,
    *,
    clock: Clock,
    actor: str | None,
    details: str | None = None,
) -> LedgerTransaction:
    """Walk a freshly appended internal transfer through processing to completed."""
    await transition(db, tx, TransactionStatus.PROCESSING, clock=clock, actor=actor)
    return await transition(db, tx, TransactionStatus.COMPLETED, clock=clock, actor=actor, details=details)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_transaction(
    db: AsyncSession, tx_id: int, *, for_update: bool = False
) -> LedgerTransaction:
    stmt = select(LedgerTransaction).where(LedgerTransaction.id == tx_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    tx = result.scalar_one_or_none()
    if tx is None:
        raise TransactionNotFound(f"Transaction {tx_id} not found", transaction_id=tx_id)
    return tx


async def get_by_reference(db: AsyncSession, reference: str) -> LedgerTransaction | None:
    result = await db.execute(
        select(LedgerTransaction).where(LedgerTransaction.reference == reference)
    )
    return result.scalar_one_or_none()


async def child_transactions(db: AsyncSession, parent_id: int) -> list[LedgerTransaction]:
    result = await db.execute(
        select(LedgerTransaction)
        .where(LedgerTransaction.parent_id == parent_id)
        .order_by(LedgerTransaction.id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------

async def find_idempotent(
    db: AsyncSession, owner: str, key: str
) -> LedgerTransaction | None:
    """Transaction previously produced for (*owner*, *key*), unless it failed."""
    row = await db.get(IdempotencyKey, (owner, key))
    if row is None:
        return None
    tx = await get_transaction(db, row.transaction_id)
    if tx.status == TransactionStatus.FAILED:
        return None
    return tx


async def bind_idempotency_key(
    db: AsyncSession, owner: str, key: str, tx: LedgerTransaction, *, now: datetime
) -> None:
    """Point (*owner*, *key*) at *tx*.

    An existing key is only re-pointed when its transaction failed.
    """
    row = await db.get(IdempotencyKey, (owner, key))
    if row is None:
        db.add(IdempotencyKey(owner=owner, key=key, transaction_id=tx.id, created_at=now))
    else:
        current = await get_transaction(db, row.transaction_id)
        if current.status != TransactionStatus.FAILED:
            raise IllegalTransition(
                f"Idempotency key already bound to {current.reference}",
                transaction_id=current.id,
            )
        logger.info("Re-pointing idempotency key %s from %s to %s", key, current.reference, tx.reference)
        row.transaction_id = tx.id
    await db.flush()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _involving(party: str):
    return or_(LedgerTransaction.from_party == party, LedgerTransaction.to_party == party)


async def list_transactions(
    db: AsyncSession,
    party: str | None,
    *,
    tx_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    loan_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 10,
    newest_first: bool = True,
) -> tuple[list[LedgerTransaction], int]:
    """Page through transactions touching *party* (all parties when None)."""
    filters = []
    if party is not None:
        filters.append(_involving(party))
    if tx_type is not None:
        filters.append(LedgerTransaction.tx_type == tx_type)
    if status is not None:
        filters.append(LedgerTransaction.status == status)
    if loan_id is not None:
        filters.append(LedgerTransaction.loan_id == loan_id)
    if start is not None:
        filters.append(LedgerTransaction.created_at >= start)
    if end is not None:
        filters.append(LedgerTransaction.created_at <= end)

    total = (
        await db.execute(select(sa_func.count(LedgerTransaction.id)).where(*filters))
    ).scalar_one()

    order = LedgerTransaction.id.desc() if newest_first else LedgerTransaction.id.asc()
    result = await db.execute(
        select(LedgerTransaction)
        .where(*filters)
        .order_by(order)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


STAT_GROUPS = {
    "type": LedgerTransaction.tx_type,
    "status": LedgerTransaction.status,
    "payment_method": LedgerTransaction.payment_method,
}


@dataclass(frozen=True)
class TransactionStat:
    key: str | None
    count: int
    total: Money
    average: Money


@dataclass(frozen=True)
class TransactionStats:
    groups: list[TransactionStat]
    summary: dict[str, TransactionStat]


async def transaction_stats(
    db: AsyncSession,
    party: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    group_by: str = "type",
) -> TransactionStats:
    """Count / total / average of *party*'s completed transactions.

    Grouped by *group_by* and currency; ``summary`` holds one line per
    currency across all groups.
    """
    if group_by not in STAT_GROUPS:
        raise ValidationFailed({"group_by": f"Must be one of: {', '.join(STAT_GROUPS)}"})
    column = STAT_GROUPS[group_by]

    filters = [_involving(party), LedgerTransaction.status == TransactionStatus.COMPLETED]
    if start is not None:
        filters.append(LedgerTransaction.created_at >= start)
    if end is not None:
        filters.append(LedgerTransaction.created_at <= end)

    count_col = sa_func.count(LedgerTransaction.id)
    sum_col = sa_func.sum(LedgerTransaction.amount_minor)
    result = await db.execute(
        select(column, LedgerTransaction.currency, count_col, sum_col)
        .where(*filters)
        .group_by(column, LedgerTransaction.currency)
        .order_by(sum_col.desc())
    )

    groups = []
    summary_totals: dict[str, list[int]] = {}
    for key, currency, count, total in result.all():
        groups.append(_stat(key.value if key is not None else None, currency, count, total))
        acc = summary_totals.setdefault(currency, [0, 0])
        acc[0] += count
        acc[1] += total
    summary = {
        currency: _stat(None, currency, count, total)
        for currency, (count, total) in summary_totals.items()
    }
    return TransactionStats(groups=groups, summary=summary)


def _stat(key, currency: str, count: int, total: int) -> TransactionStat:
    total_money = Money(int(total), currency)
    return TransactionStat(
        key=key,
        count=count,
        total=total_money,
        average=total_money.mul_rate(Decimal(1) / Decimal(count)) if count else Money.zero(currency),
    )
