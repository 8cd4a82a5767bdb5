"""SQLAlchemy models for the lending ledger."""

from lendledger.models.loan import (
    Loan,
    LoanStatus,
    LoanPurpose,
    LoanCategory,
    CollateralType,
    FundingContribution,
    Installment,
    InstallmentStatus,
    LoanTimelineEntry,
)
from lendledger.models.ledger import (
    LedgerTransaction,
    TransactionType,
    TransactionStatus,
    PaymentMethod,
    AuditAction,
    TransactionAuditEntry,
    IdempotencyKey,
    PartyBalance,
)
from lendledger.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "Loan", "LoanStatus", "LoanPurpose", "LoanCategory", "CollateralType",
    "FundingContribution", "Installment", "InstallmentStatus", "LoanTimelineEntry",
    "LedgerTransaction", "TransactionType", "TransactionStatus", "PaymentMethod",
    "AuditAction", "TransactionAuditEntry", "IdempotencyKey", "PartyBalance",
    "ErrorLog", "ErrorSeverity",
]
