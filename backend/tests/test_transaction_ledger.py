"""Tests for the append-only transaction ledger.

Covers:
- Appending with reference generation and the ``created`` audit entry
- The status workflow and its audit trail
- Idempotency key binding
- Listing and statistics
"""

import re
from datetime import timedelta

import pytest

from lendledger.models.ledger import (
    AuditAction,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)
from lendledger.services import balance_engine, transaction_ledger as ledger
from lendledger.services.errors import (
    IllegalTransition,
    InvalidAmount,
    TransactionNotFound,
    ValidationFailed,
)
from lendledger.services.money import Money


def usd(minor: int) -> Money:
    return Money(minor, "USD")


async def _append(db, clock, **overrides):
    kwargs = {
        "tx_type": TransactionType.DEPOSIT,
        "from_party": "bank",
        "to_party": "alice",
        "amount": usd(10_000),
        "performed_by": "alice",
    }
    kwargs.update(overrides)
    return await ledger.append_transaction(db, clock=clock, **kwargs)


async def _complete(db, tx, clock):
    return await ledger.settle_immediately(db, tx, clock=clock, actor="system")


# ===================================================================
# Append
# ===================================================================


class TestAppend:

    @pytest.mark.asyncio
    async def test_new_transaction_is_pending(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock, description="Top-up")

        assert tx.status == TransactionStatus.PENDING
        assert re.fullmatch(r"TXN-20260115-[0-9A-F]{10}", tx.reference)
        assert tx.net_amount == usd(10_000)
        assert tx.created_at == clock.now()
        assert len(tx.audit_trail) == 1
        entry = tx.audit_trail[0]
        assert entry.action == AuditAction.CREATED
        assert entry.previous_status is None
        assert entry.new_status == TransactionStatus.PENDING
        assert entry.performed_by == "alice"

    @pytest.mark.asyncio
    async def test_fee_reduces_net_amount(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock, processing_fee=usd(290))
        assert tx.processing_fee == usd(290)
        assert tx.net_amount == usd(9_710)

    @pytest.mark.asyncio
    async def test_references_are_unique(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                refs = {(await _append(db, clock)).reference for _ in range(20)}
        assert len(refs) == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, error",
        [
            ({"amount": usd(0)}, InvalidAmount),
            ({"amount": usd(-100)}, InvalidAmount),
            ({"processing_fee": usd(10_001)}, InvalidAmount),
            ({"processing_fee": Money(100, "EUR")}, InvalidAmount),
            ({"to_party": "bank"}, ValidationFailed),
            ({"from_party": ""}, ValidationFailed),
        ],
    )
    async def test_rejected_appends(self, session_factory, clock, overrides, error):
        async with session_factory() as db:
            with pytest.raises(error):
                await _append(db, clock, **overrides)


# ===================================================================
# Workflow
# ===================================================================


class TestTransitions:

    @pytest.mark.asyncio
    async def test_full_workflow_writes_one_audit_entry_per_change(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock)
                clock.advance(minutes=1)
                await ledger.transition(db, tx, TransactionStatus.PROCESSING, clock=clock, actor="system")
                clock.advance(minutes=1)
                await ledger.transition(db, tx, TransactionStatus.COMPLETED, clock=clock, actor="system")
                clock.advance(minutes=1)
                await ledger.transition(
                    db, tx, TransactionStatus.REFUNDED, clock=clock, actor="admin-1", details="chargeback"
                )

        assert tx.status == TransactionStatus.REFUNDED
        assert [e.action for e in tx.audit_trail] == [
            AuditAction.CREATED, AuditAction.PROCESSED, AuditAction.COMPLETED, AuditAction.REFUNDED,
        ]
        assert [e.previous_status for e in tx.audit_trail[1:]] == [
            TransactionStatus.PENDING, TransactionStatus.PROCESSING, TransactionStatus.COMPLETED,
        ]
        assert tx.audit_trail[-1].details == "chargeback"
        assert tx.processed_at < tx.completed_at

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "walk, target",
        [
            ([], TransactionStatus.COMPLETED),
            ([], TransactionStatus.REFUNDED),
            ([TransactionStatus.PROCESSING], TransactionStatus.CANCELLED),
            ([TransactionStatus.PROCESSING, TransactionStatus.COMPLETED], TransactionStatus.CANCELLED),
            ([TransactionStatus.PROCESSING, TransactionStatus.FAILED], TransactionStatus.PROCESSING),
            ([TransactionStatus.CANCELLED], TransactionStatus.PENDING),
        ],
    )
    async def test_illegal_moves_leave_no_trace(self, session_factory, clock, walk, target):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock)
                for step in walk:
                    await ledger.transition(db, tx, step, clock=clock, actor="system")
                before = (tx.status, len(tx.audit_trail))
                with pytest.raises(IllegalTransition):
                    await ledger.transition(db, tx, target, clock=clock, actor="system")
                assert (tx.status, len(tx.audit_trail)) == before

    @pytest.mark.asyncio
    async def test_completion_moves_balances_and_refund_reverses(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock, processing_fee=usd(100))
                await _complete(db, tx, clock)
                assert await balance_engine.get_balance(db, "alice", "USD") == usd(9_900)
                assert await balance_engine.get_balance(db, "bank", "USD") == usd(-9_900)

                await ledger.transition(db, tx, TransactionStatus.REFUNDED, clock=clock, actor="admin-1")
                assert await balance_engine.get_balance(db, "alice", "USD") == usd(0)
                assert await balance_engine.get_balance(db, "bank", "USD") == usd(0)

    @pytest.mark.asyncio
    async def test_failed_transaction_never_moves_balances(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock)
                await ledger.transition(db, tx, TransactionStatus.PROCESSING, clock=clock, actor="system")
                await ledger.transition(db, tx, TransactionStatus.FAILED, clock=clock, actor="system")
                assert await balance_engine.get_balance(db, "alice", "USD") == usd(0)


class TestLookups:

    @pytest.mark.asyncio
    async def test_missing_transaction(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(TransactionNotFound):
                await ledger.get_transaction(db, 999)

    @pytest.mark.asyncio
    async def test_by_reference_and_children(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                parent = await _append(db, clock)
                child = await _append(
                    db, clock, from_party="alice", to_party="carol", amount=usd(500), parent_id=parent.id
                )
            assert (await ledger.get_by_reference(db, parent.reference)).id == parent.id
            assert await ledger.get_by_reference(db, "TXN-00000000-NOPE") is None
            assert [c.id for c in await ledger.child_transactions(db, parent.id)] == [child.id]


# ===================================================================
# Idempotency
# ===================================================================


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_bind_and_find(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                tx = await _append(db, clock)
                await ledger.bind_idempotency_key(db, "alice", "key-1", tx, now=clock.now())
                found = await ledger.find_idempotent(db, "alice", "key-1")
                assert found.id == tx.id
                assert await ledger.find_idempotent(db, "bob", "key-1") is None

    @pytest.mark.asyncio
    async def test_live_key_cannot_be_rebound(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                first = await _append(db, clock)
                second = await _append(db, clock)
                await ledger.bind_idempotency_key(db, "alice", "key-1", first, now=clock.now())
                with pytest.raises(IllegalTransition):
                    await ledger.bind_idempotency_key(db, "alice", "key-1", second, now=clock.now())

    @pytest.mark.asyncio
    async def test_failed_key_is_released(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                first = await _append(db, clock)
                await ledger.bind_idempotency_key(db, "alice", "key-1", first, now=clock.now())
                await ledger.transition(db, first, TransactionStatus.PROCESSING, clock=clock, actor="system")
                await ledger.transition(db, first, TransactionStatus.FAILED, clock=clock, actor="system")
                assert await ledger.find_idempotent(db, "alice", "key-1") is None

                second = await _append(db, clock)
                await ledger.bind_idempotency_key(db, "alice", "key-1", second, now=clock.now())
                assert (await ledger.find_idempotent(db, "alice", "key-1")).id == second.id


# ===================================================================
# Listing & stats
# ===================================================================


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_filters_and_pages(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                ids = []
                for _ in range(5):
                    ids.append((await _append(db, clock)).id)
                    clock.advance(days=1)
                await _append(db, clock, from_party="bank", to_party="bob")
                withdrawal = await _append(
                    db, clock, tx_type=TransactionType.WITHDRAWAL, from_party="alice", to_party="bank"
                )

            items, total = await ledger.list_transactions(db, "alice", page=1, limit=3)
            assert total == 6
            assert [t.id for t in items] == [withdrawal.id, ids[4], ids[3]]

            items, total = await ledger.list_transactions(db, "alice", page=2, limit=3)
            assert [t.id for t in items] == [ids[2], ids[1], ids[0]]

            items, total = await ledger.list_transactions(db, "alice", tx_type=TransactionType.WITHDRAWAL)
            assert total == 1

            start = clock.now() - timedelta(days=1, hours=1)
            items, total = await ledger.list_transactions(db, "alice", start=start)
            assert {t.id for t in items} == {ids[4], withdrawal.id}

            _, total = await ledger.list_transactions(db, None)
            assert total == 7

    @pytest.mark.asyncio
    async def test_stats_only_count_completed(self, session_factory, clock):
        async with session_factory() as db:
            async with db.begin():
                for minor in (10_000, 20_000, 30_000):
                    await _complete(db, await _append(db, clock, amount=usd(minor)), clock)
                card = await _append(
                    db, clock,
                    tx_type=TransactionType.WITHDRAWAL,
                    from_party="alice",
                    to_party="bank",
                    amount=usd(5_000),
                    payment_method=PaymentMethod.DEBIT_CARD,
                )
                await _complete(db, card, clock)
                await _append(db, clock, amount=usd(99_999))

            stats = await ledger.transaction_stats(db, "alice")
            assert [(g.key, g.count, g.total) for g in stats.groups] == [
                ("deposit", 3, usd(60_000)),
                ("withdrawal", 1, usd(5_000)),
            ]
            assert stats.groups[0].average == usd(20_000)
            assert stats.summary["USD"].count == 4
            assert stats.summary["USD"].total == usd(65_000)

            by_method = await ledger.transaction_stats(db, "alice", group_by="payment_method")
            assert {g.key for g in by_method.groups} == {None, "debit-card"}

    @pytest.mark.asyncio
    async def test_stats_reject_unknown_grouping(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(ValidationFailed):
                await ledger.transaction_stats(db, "alice", group_by="weekday")
