"""Translation of lending-core errors into HTTP responses."""

from fastapi import HTTPException, status

from lendledger.services.errors import (
    GatewayTimeout,
    LendingError,
    LoanNotFound,
    PermissionDenied,
    PersistenceConflict,
    TransactionNotFound,
    ValidationFailed,
)

_STATUS_BY_KIND: list[tuple[type[LendingError], int]] = [
    (ValidationFailed, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (LoanNotFound, status.HTTP_404_NOT_FOUND),
    (TransactionNotFound, status.HTTP_404_NOT_FOUND),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (GatewayTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (PersistenceConflict, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: LendingError) -> int:
    for kind, code in _STATUS_BY_KIND:
        if isinstance(exc, kind):
            return code
    # State-machine and business-rule violations
    return status.HTTP_409_CONFLICT


def http_error(exc: LendingError) -> HTTPException:
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, ValidationFailed):
        detail["errors"] = exc.errors
    headers = {"Retry-After": "1"} if isinstance(exc, PersistenceConflict) else None
    return HTTPException(status_code=status_for(exc), detail=detail, headers=headers)
