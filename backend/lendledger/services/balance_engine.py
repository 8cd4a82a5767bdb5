"""Party balances derived from the transaction ledger.

A party's balance is the fold of every *completed* transaction touching it:

    balance = Σ net_amount (to = party) − Σ net_amount (from = party)

``party_balances`` caches that fold per (party, currency).  The cache is only
ever moved by ``apply_transaction`` inside the same DB transaction as the
ledger write that completes (or refunds) a transaction, so a party always
reads its own writes.  ``recompute_balance`` replays the ledger from scratch
and is the reference the cache is verified against.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.ledger import LedgerTransaction, PartyBalance, TransactionStatus
from lendledger.services.money import Money

logger = logging.getLogger(__name__)


# ── Pure fold ───────────────────────────────────────────────────────────


def balance_delta(tx, party: str) -> int:
    """Signed effect of one completed transaction on *party*, in minor units."""
    delta = 0
    if tx.to_party == party:
        delta += tx.net_amount_minor
    if tx.from_party == party:
        delta -= tx.net_amount_minor
    return delta


def fold_balance(transactions: Iterable, party: str, currency: str) -> Money:
    """Replay *transactions* in order and return *party*'s balance."""
    total = 0
    for tx in transactions:
        if tx.status != TransactionStatus.COMPLETED or tx.currency != currency:
            continue
        total += balance_delta(tx, party)
    return Money(total, currency)


# ── Cache maintenance ───────────────────────────────────────────────────


async def apply_transaction(
    db: AsyncSession, tx: LedgerTransaction, *, now: datetime, reverse: bool = False
) -> None:
    """Move both parties' cached balances by *tx*'s effect.

    Called on entry into ``completed`` and, with ``reverse=True``, on
    ``completed → refunded``.
    """
    sign = -1 if reverse else 1
    for party in {tx.from_party, tx.to_party}:
        delta = balance_delta(tx, party) * sign
        if delta:
            await _apply_delta(db, party, tx.currency, delta, now)


async def _apply_delta(
    db: AsyncSession, party: str, currency: str, delta: int, now: datetime
) -> None:
    result = await db.execute(
        update(PartyBalance)
        .where(PartyBalance.party_id == party, PartyBalance.currency == currency)
        .values(
            balance_minor=PartyBalance.balance_minor + delta,
            applied_events=PartyBalance.applied_events + 1,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        # First movement for this party; a concurrent insert surfaces as an
        # IntegrityError on flush and the whole unit of work is retried.
        db.add(
            PartyBalance(
                party_id=party,
                currency=currency,
                balance_minor=delta,
                applied_events=1,
                updated_at=now,
            )
        )
        await db.flush()
    logger.debug("Balance %s/%s moved by %d", party, currency, delta)


# ── Reads ───────────────────────────────────────────────────────────────


async def get_balance(db: AsyncSession, party: str, currency: str) -> Money:
    result = await db.execute(
        select(PartyBalance.balance_minor).where(
            PartyBalance.party_id == party, PartyBalance.currency == currency
        )
    )
    minor = result.scalar_one_or_none()
    return Money(minor or 0, currency)


async def get_balances(db: AsyncSession, party: str) -> dict[str, Money]:
    result = await db.execute(
        select(PartyBalance).where(PartyBalance.party_id == party).order_by(PartyBalance.currency)
    )
    return {row.currency: row.balance for row in result.scalars().all()}


async def recompute_balance(db: AsyncSession, party: str, currency: str) -> Money:
    """Full replay of the ledger for *party* in *currency*."""
    result = await db.execute(
        select(
            LedgerTransaction.from_party,
            LedgerTransaction.to_party,
            LedgerTransaction.net_amount_minor,
            LedgerTransaction.currency,
            LedgerTransaction.status,
        )
        .where(
            or_(LedgerTransaction.from_party == party, LedgerTransaction.to_party == party),
            LedgerTransaction.currency == currency,
            LedgerTransaction.status == TransactionStatus.COMPLETED,
        )
        .order_by(LedgerTransaction.id)
    )
    return fold_balance(result.all(), party, currency)


@dataclass(frozen=True)
class BalanceCheck:
    party: str
    cached: Money
    replayed: Money

    @property
    def consistent(self) -> bool:
        return self.cached == self.replayed


async def verify_balance(db: AsyncSession, party: str, currency: str) -> BalanceCheck:
    check = BalanceCheck(
        party=party,
        cached=await get_balance(db, party, currency),
        replayed=await recompute_balance(db, party, currency),
    )
    if not check.consistent:
        logger.error(
            "Balance drift for %s: cached=%s replayed=%s", party, check.cached, check.replayed
        )
    return check


async def repair_balance(
    db: AsyncSession, party: str, currency: str, *, now: datetime
) -> BalanceCheck:
    """Rewrite the cached balance from a ledger replay."""
    check = await verify_balance(db, party, currency)
    if check.consistent:
        return check
    row = await db.get(PartyBalance, (party, currency))
    if row is None:
        row = PartyBalance(party_id=party, currency=currency, applied_events=0)
        db.add(row)
    row.balance_minor = check.replayed.minor
    row.updated_at = now
    await db.flush()
    logger.warning("Repaired balance for %s/%s to %s", party, currency, check.replayed)
    return BalanceCheck(party=party, cached=check.replayed, replayed=check.replayed)


async def cached_balances(db: AsyncSession) -> list[tuple[str, str]]:
    """Every (party, currency) pair with a cached balance row."""
    result = await db.execute(
        select(PartyBalance.party_id, PartyBalance.currency).order_by(
            PartyBalance.party_id, PartyBalance.currency
        )
    )
    return [(party, currency) for party, currency in result.all()]
