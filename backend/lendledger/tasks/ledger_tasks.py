"""Celery periodic tasks: late-fee assessment and balance verification."""

import asyncio
import logging
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from lendledger.tasks import celery_app
from lendledger.config import settings
from lendledger.services.lending_core import LendingCore

logger = logging.getLogger(__name__)


def _build_core() -> tuple[LendingCore, AsyncEngine]:
    engine = create_async_engine(settings.database_url)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return LendingCore(session_factory, settings=settings), engine


def _run(coro_factory) -> dict:
    """Run an async job on a private event loop and dispose of its engine."""

    async def _main():
        core, engine = _build_core()
        try:
            return await coro_factory(core)
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_main())
    finally:
        loop.close()


async def run_late_fee_assessment(core: LendingCore, as_of: Optional[date] = None) -> dict:
    report = await core.assess_late_fees(as_of)
    return {
        "as_of": report.as_of.isoformat(),
        "loans_checked": report.loans_checked,
        "marked_overdue": report.marked_overdue,
        "fees_assessed": report.fees_assessed,
        "fees": {currency: str(fee.to_decimal()) for currency, fee in report.fees_by_currency.items()},
    }


@celery_app.task(name="lendledger.tasks.ledger_tasks.assess_late_fees")
def assess_late_fees(as_of: Optional[str] = None) -> dict:
    """Mark overdue installments and charge late fees as of *as_of* (ISO date, default today)."""
    day = date.fromisoformat(as_of) if as_of else None
    stats = _run(lambda core: run_late_fee_assessment(core, day))
    logger.info("Late-fee run: %s", stats)
    return stats


async def run_balance_verification(core: LendingCore) -> dict:
    checks = await core.verify_all_balances()
    drifted = [
        {
            "party": check.party,
            "cached": str(check.cached),
            "replayed": str(check.replayed),
        }
        for check in checks
        if not check.consistent
    ]
    return {"checked": len(checks), "drifted": drifted}


@celery_app.task(name="lendledger.tasks.ledger_tasks.verify_balances")
def verify_balances() -> dict:
    """Compare every cached balance with a full ledger replay."""
    stats = _run(run_balance_verification)
    if stats["drifted"]:
        logger.error("Balance drift on %d of %d balances", len(stats["drifted"]), stats["checked"])
    return stats
