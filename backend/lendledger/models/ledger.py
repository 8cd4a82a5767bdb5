"""Transaction ledger models.

Implements the append-only money ledger:
- LedgerTransaction: one monetary event between two parties
- TransactionAuditEntry: one row per state change, never updated or deleted
- IdempotencyKey: client-supplied retry token → transaction
- PartyBalance: incrementally maintained fold of completed transactions
"""

import enum
from datetime import datetime

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Enum,
    DateTime,
    ForeignKey,
    Text,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendledger.database import Base
from lendledger.services.money import Money


# ===================================================================
# Enumerations
# ===================================================================


class TransactionType(str, enum.Enum):
    LOAN_FUNDING = "loan-funding"
    LOAN_REPAYMENT = "loan-repayment"
    INTEREST_PAYMENT = "interest-payment"
    LATE_FEE = "late-fee"
    REFUND = "refund"
    PENALTY = "penalty"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    TRANSFER = "transfer"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "bank-transfer"
    CREDIT_CARD = "credit-card"
    DEBIT_CARD = "debit-card"
    CHECK = "check"
    WALLET = "wallet"
    OTHER = "other"


class AuditAction(str, enum.Enum):
    CREATED = "created"
    PROCESSED = "processed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# ===================================================================
# Ledger
# ===================================================================


class LedgerTransaction(Base):
    """A monetary event between two parties.

    Immutable once completed apart from the completed → refunded move.
    """

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_tx_amount_positive"),
        CheckConstraint(
            "processing_fee_minor >= 0 AND processing_fee_minor <= amount_minor",
            name="ck_tx_fee_within_amount",
        ),
        CheckConstraint(
            "net_amount_minor = amount_minor - processing_fee_minor",
            name="ck_tx_net_amount",
        ),
        Index("ix_ledger_tx_from", "from_party", "status"),
        Index("ix_ledger_tx_to", "to_party", "status"),
        Index("ix_ledger_tx_loan", "loan_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    tx_type: Mapped[TransactionType] = mapped_column("type", Enum(TransactionType), nullable=False)

    from_party: Mapped[str] = mapped_column(String(64), nullable=False)
    to_party: Mapped[str] = mapped_column(String(64), nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processing_fee_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    net_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False
    )

    loan_id: Mapped[int | None] = mapped_column(ForeignKey("loans.id"), nullable=True)
    installment_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=True
    )

    payment_method: Mapped[PaymentMethod | None] = mapped_column(Enum(PaymentMethod), nullable=True)
    gateway_provider: Mapped[str] = mapped_column(String(30), default="internal", nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    audit_trail = relationship(
        "TransactionAuditEntry",
        back_populates="transaction",
        order_by="TransactionAuditEntry.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    @property
    def processing_fee(self) -> Money:
        return Money(self.processing_fee_minor, self.currency)

    @property
    def net_amount(self) -> Money:
        return Money(self.net_amount_minor, self.currency)

    @property
    def is_successful(self) -> bool:
        return self.status == TransactionStatus.COMPLETED


class TransactionAuditEntry(Base):
    """One state change of a ledger transaction."""

    __tablename__ = "ledger_audit_trail"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=False, index=True
    )
    action: Mapped[AuditAction] = mapped_column(Enum(AuditAction), nullable=False)
    previous_status: Mapped[TransactionStatus | None] = mapped_column(
        Enum(TransactionStatus), nullable=True
    )
    new_status: Mapped[TransactionStatus] = mapped_column(Enum(TransactionStatus), nullable=False)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    transaction = relationship("LedgerTransaction", back_populates="audit_trail")


class IdempotencyKey(Base):
    """Maps a caller's retry token to the transaction it produced."""

    __tablename__ = "idempotency_keys"

    owner: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PartyBalance(Base):
    """Cached fold of completed transactions for one party and currency."""

    __tablename__ = "party_balances"

    party_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), primary_key=True)
    balance_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    applied_events: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def balance(self) -> Money:
        return Money(self.balance_minor, self.currency)
