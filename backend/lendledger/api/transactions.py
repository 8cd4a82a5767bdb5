"""Transaction workflow, ledger queries and balance endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from lendledger.api.errors import http_error
from lendledger.auth_utils import get_core, get_principal, require_roles
from lendledger.models.ledger import TransactionStatus, TransactionType
from lendledger.schemas import (
    BalanceCheckResponse,
    BalanceResponse,
    CompleteRequest,
    LateFeeReportResponse,
    LateFeeRequest,
    ReasonRequest,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatsResponse,
)
from lendledger.services.error_logger import log_error_standalone
from lendledger.services.errors import LendingError
from lendledger.services.lending_core import LendingCore
from lendledger.services.principal import Principal, Role

logger = logging.getLogger(__name__)

router = APIRouter()


async def _report(e: Exception, core: LendingCore, function_name: str, principal: Principal) -> None:
    await log_error_standalone(
        e,
        session_factory=core.session_factory,
        module="api.transactions",
        function_name=function_name,
        principal_id=principal.id,
    )


def _require_own_party(principal: Principal, party: str) -> None:
    if not principal.is_admin and party != principal.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only an administrator can read another party's balance",
        )


# ── Queries ──────────────────────────────────────────────────


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    party: Optional[str] = None,
    tx_type: Optional[TransactionType] = Query(None, alias="type"),
    tx_status: Optional[TransactionStatus] = Query(None, alias="status"),
    loan_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            result = await core.list_transactions(
                principal,
                party=party,
                tx_type=tx_type,
                status=tx_status,
                loan_id=loan_id,
                start=start_date,
                end=end_date,
                page=page,
                limit=limit,
            )
            return TransactionListResponse.model_validate(result)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "list_transactions", principal)
        raise


@router.get("/stats", response_model=TransactionStatsResponse)
async def transaction_stats(
    party: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    group_by: str = "type",
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            stats = await core.transaction_stats(
                principal, party=party, start=start_date, end=end_date, group_by=group_by
            )
            return TransactionStatsResponse.model_validate(stats)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "transaction_stats", principal)
        raise


# ── Balances ─────────────────────────────────────────────────


@router.get("/balances/{party}", response_model=BalanceResponse)
async def get_balances(
    party: str,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    _require_own_party(principal, party)
    try:
        balances = await core.get_balances(party)
        return BalanceResponse(party=party, balances=list(balances.values()))
    except Exception as e:
        await _report(e, core, "get_balances", principal)
        raise


@router.get("/balances/{party}/verify", response_model=BalanceCheckResponse)
async def verify_balance(
    party: str,
    currency: Optional[str] = None,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return BalanceCheckResponse.model_validate(await core.verify_balance(party, currency))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "verify_balance", principal)
        raise


@router.post("/balances/{party}/repair", response_model=BalanceCheckResponse)
async def repair_balance(
    party: str,
    currency: Optional[str] = None,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return BalanceCheckResponse.model_validate(
                await core.repair_balance(principal, party, currency)
            )
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "repair_balance", principal)
        raise


# ── Scheduled jobs (manual trigger) ──────────────────────────


@router.post("/late-fees/assess", response_model=LateFeeReportResponse)
async def assess_late_fees(
    data: LateFeeRequest,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        report = await core.assess_late_fees(data.as_of)
        return LateFeeReportResponse(
            as_of=report.as_of,
            loans_checked=report.loans_checked,
            marked_overdue=report.marked_overdue,
            fees_assessed=report.fees_assessed,
            fees=list(report.fees_by_currency.values()),
        )
    except Exception as e:
        await _report(e, core, "assess_late_fees", principal)
        raise


# ── Single transaction ───────────────────────────────────────


@router.get("/{tx_id}", response_model=TransactionResponse)
async def get_transaction(
    tx_id: int,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return TransactionResponse.model_validate(await core.get_transaction(principal, tx_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "get_transaction", principal)
        raise


@router.post("/{tx_id}/process", response_model=TransactionResponse)
async def process_transaction(
    tx_id: int,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return TransactionResponse.model_validate(await core.process_transaction(principal, tx_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "process_transaction", principal)
        raise


@router.post("/{tx_id}/complete", response_model=TransactionResponse)
async def complete_transaction(
    tx_id: int,
    data: CompleteRequest,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            view = await core.complete_transaction(principal, tx_id, data.gateway_reference)
            return TransactionResponse.model_validate(view)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "complete_transaction", principal)
        raise


@router.post("/{tx_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    tx_id: int,
    data: ReasonRequest,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            view = await core.cancel_transaction(principal, tx_id, data.reason)
            return TransactionResponse.model_validate(view)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "cancel_transaction", principal)
        raise


@router.post("/{tx_id}/refund", response_model=TransactionResponse)
async def refund_transaction(
    tx_id: int,
    data: ReasonRequest,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            view = await core.refund_transaction(principal, tx_id, data.reason)
            return TransactionResponse.model_validate(view)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "refund_transaction", principal)
        raise
