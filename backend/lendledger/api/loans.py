"""Loan request, funding and repayment endpoints."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from lendledger.api.errors import http_error
from lendledger.auth_utils import get_core, get_principal, require_roles
from lendledger.models.loan import LoanCategory, LoanPurpose, LoanStatus
from lendledger.schemas import (
    FundingResponse,
    FundRequest,
    LoanCreate,
    LoanListResponse,
    LoanResponse,
    LoanUpdate,
    ReasonRequest,
    RepaymentRequest,
    TransactionResponse,
)
from lendledger.services.error_logger import log_error_standalone
from lendledger.services.errors import LendingError
from lendledger.services.lending_core import LendingCore, LoanFilters
from lendledger.services.principal import Principal, Role

logger = logging.getLogger(__name__)

router = APIRouter()


async def _report(e: Exception, core: LendingCore, function_name: str, principal: Principal) -> None:
    await log_error_standalone(
        e,
        session_factory=core.session_factory,
        module="api.loans",
        function_name=function_name,
        principal_id=principal.id,
    )


# ── Borrower ─────────────────────────────────────────────────


@router.post("", response_model=LoanResponse, status_code=status.HTTP_201_CREATED)
async def create_loan(
    data: LoanCreate,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            loan_id = await core.create_loan(principal, data.model_dump(mode="json", exclude_none=True))
            return LoanResponse.model_validate(await core.get_loan_view(principal, loan_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "create_loan", principal)
        raise


@router.get("", response_model=LoanListResponse)
async def list_loans(
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    purpose: Optional[LoanPurpose] = None,
    category: Optional[LoanCategory] = None,
    min_amount: Optional[Decimal] = Query(None, ge=0),
    max_amount: Optional[Decimal] = Query(None, ge=0),
    min_rate: Optional[Decimal] = Query(None, ge=0),
    max_rate: Optional[Decimal] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    filters = LoanFilters(
        status=loan_status,
        purpose=purpose,
        category=category,
        min_amount=min_amount,
        max_amount=max_amount,
        min_rate=min_rate,
        max_rate=max_rate,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    try:
        try:
            return LoanListResponse.model_validate(await core.list_loans(principal, filters))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "list_loans", principal)
        raise


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: int,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.get_loan_view(principal, loan_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "get_loan", principal)
        raise


@router.patch("/{loan_id}", response_model=LoanResponse)
async def update_loan(
    loan_id: int,
    data: LoanUpdate,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            changes = data.model_dump(mode="json", exclude_unset=True)
            return LoanResponse.model_validate(await core.update_draft_loan(principal, loan_id, changes))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "update_loan", principal)
        raise


@router.delete("/{loan_id}", response_model=LoanResponse)
async def delete_draft_loan(
    loan_id: int,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.delete_draft_loan(principal, loan_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "delete_draft_loan", principal)
        raise


@router.post("/{loan_id}/submit", response_model=LoanResponse)
async def submit_loan(
    loan_id: int,
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.submit_loan(principal, loan_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "submit_loan", principal)
        raise


# ── Administration ───────────────────────────────────────────


@router.post("/{loan_id}/approve", response_model=LoanResponse)
async def approve_loan(
    loan_id: int,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.approve_loan(principal, loan_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "approve_loan", principal)
        raise


@router.post("/{loan_id}/reject", response_model=LoanResponse)
async def reject_loan(
    loan_id: int,
    data: ReasonRequest,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.reject_loan(principal, loan_id, data.reason))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "reject_loan", principal)
        raise


@router.post("/{loan_id}/default", response_model=LoanResponse)
async def default_loan(
    loan_id: int,
    data: ReasonRequest,
    principal: Principal = Depends(require_roles(Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            return LoanResponse.model_validate(await core.default_loan(principal, loan_id, data.reason))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "default_loan", principal)
        raise


# ── Money movement ───────────────────────────────────────────


@router.post("/{loan_id}/fund", response_model=FundingResponse)
async def fund_loan(
    loan_id: int,
    data: FundRequest,
    principal: Principal = Depends(require_roles(Role.LENDER, Role.BOTH, Role.ADMIN)),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            result = await core.fund_loan(principal, loan_id, data.amount, lender_id=data.lender_id)
            return FundingResponse.model_validate(result)
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "fund_loan", principal)
        raise


@router.post(
    "/{loan_id}/repayments",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_repayment(
    loan_id: int,
    data: RepaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    principal: Principal = Depends(get_principal),
    core: LendingCore = Depends(get_core),
):
    try:
        try:
            tx_id = await core.record_repayment(
                principal,
                loan_id,
                amount=data.amount,
                payment_method=data.payment_method,
                idempotency_key=data.idempotency_key or idempotency_key,
                installment_number=data.installment_number,
            )
            return TransactionResponse.model_validate(await core.get_transaction(principal, tx_id))
        except LendingError as e:
            raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        await _report(e, core, "record_repayment", principal)
        raise
