"""Shared fixtures: an on-disk SQLite ledger, a fixed clock and a wired LendingCore."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import lendledger.models  # noqa: F401  (registers every table on Base.metadata)
from lendledger.config import Settings
from lendledger.database import Base
from lendledger.services.clock import FixedClock
from lendledger.services.lending_core import LendingCore
from lendledger.services.money import Money
from lendledger.services.principal import Principal, Role

BORROWER = Principal(id="borrower-1", role=Role.BORROWER)
OTHER_BORROWER = Principal(id="borrower-2", role=Role.BORROWER)
LENDER_A = Principal(id="lender-a", role=Role.LENDER)
LENDER_B = Principal(id="lender-b", role=Role.LENDER)
LENDER_C = Principal(id="lender-c", role=Role.LENDER)
ADMIN = Principal(id="admin-1", role=Role.ADMIN)

START = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


def loan_payload(**overrides) -> dict:
    payload = {
        "title": "Second delivery van",
        "description": "Financing a second van for the catering business.",
        "purpose": "business",
        "amount": "10000.00",
        "interest_rate": "6",
        "tenure": 12,
        "tenure_unit": "months",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        secret_key="test-secret-key",
        database_url="sqlite+aiosqlite://",
        gateway_timeout_seconds=0.5,
        persistence_retry_attempts=3,
        persistence_retry_backoff_ms=0,
    )


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def core(session_factory, settings, clock):
    return LendingCore(session_factory, settings=settings, clock=clock)


@pytest.fixture
def make_loan(core):
    """Create a loan and walk it to *status* (draft, pending, approved or active)."""

    async def _make(status: str = "approved", borrower: Principal = BORROWER, **overrides) -> int:
        loan_id = await core.create_loan(borrower, loan_payload(**overrides))
        if status == "draft":
            return loan_id
        await core.submit_loan(borrower, loan_id)
        if status == "pending":
            return loan_id
        await core.approve_loan(ADMIN, loan_id)
        if status == "approved":
            return loan_id
        assert status == "active", status
        view = await core.get_loan_view(ADMIN, loan_id)
        total = view.amount.minor
        first = total * 6 // 10
        await core.fund_loan(LENDER_A, loan_id, _major(first, view.amount.currency))
        await core.fund_loan(LENDER_B, loan_id, _major(total - first, view.amount.currency))
        return loan_id

    return _make


def _major(minor: int, currency: str) -> str:
    return f"{Money(minor, currency).to_decimal()}"
