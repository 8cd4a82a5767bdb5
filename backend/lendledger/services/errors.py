"""Error kinds raised by the lending core.

Every error carries a stable ``code`` so the HTTP layer (or any other caller)
can branch on the kind without matching message text.
"""


class LendingError(Exception):
    """Base exception for lending core errors."""

    code = "lending_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.context = context


# ── Input ───────────────────────────────────────────────────────────────


class ValidationFailed(LendingError):
    """Malformed input; carries a field → message mapping."""

    code = "validation_failed"

    def __init__(self, errors: dict[str, str] | str, **context):
        if isinstance(errors, str):
            errors = {"__root__": errors}
        self.errors = dict(errors)
        summary = "; ".join(f"{k}: {v}" for k, v in self.errors.items())
        super().__init__(f"Validation failed: {summary}", **context)


class InvalidAmount(ValidationFailed):
    """Monetary value below the minimum unit, non-positive, or unsupported."""

    code = "invalid_amount"

    def __init__(self, message: str, field: str = "amount"):
        super().__init__({field: message})


class CurrencyMismatch(InvalidAmount):
    """Operation mixes two currencies."""

    code = "currency_mismatch"


class InvalidTerms(ValidationFailed):
    """Loan terms cannot be amortized."""

    code = "invalid_terms"


# ── Lookup / access ─────────────────────────────────────────────────────


class LoanNotFound(LendingError):
    """Loan does not exist."""

    code = "loan_not_found"


class TransactionNotFound(LendingError):
    """Transaction does not exist."""

    code = "transaction_not_found"


class PermissionDenied(LendingError):
    """Principal is not allowed to perform this action."""

    code = "permission_denied"


class NotBorrower(PermissionDenied):
    """Only the loan's borrower may perform this action."""

    code = "not_borrower"


# ── State machines ──────────────────────────────────────────────────────


class IllegalLoanState(LendingError):
    """Loan status does not permit the requested transition."""

    code = "illegal_loan_state"


class IllegalTransition(LendingError):
    """Transaction status does not permit the requested transition."""

    code = "illegal_transition"


# ── Business rules / preconditions ──────────────────────────────────────


class OverfundingRejected(LendingError):
    """Contribution exceeds the loan's remaining amount."""

    code = "overfunding_rejected"


class DuplicateLender(LendingError):
    """Lender already holds a contribution on this loan."""

    code = "duplicate_lender"


class NotFundable(LendingError):
    """Loan is not open for funding."""

    code = "not_fundable"


class LoanNotActive(LendingError):
    """Loan is not in repayment."""

    code = "loan_not_active"


class RepaymentInProgress(LendingError):
    """The installment already has an unsettled repayment."""

    code = "repayment_in_progress"


# ── Transient ───────────────────────────────────────────────────────────


class GatewayTimeout(LendingError):
    """Payment gateway did not answer in time; retry with the same idempotency key."""

    code = "gateway_timeout"


class PersistenceConflict(LendingError):
    """Concurrent modification detected; the operation may be retried."""

    code = "persistence_conflict"
