"""Loan, funding contribution, installment and timeline models."""

import enum
from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String, Numeric, Integer, BigInteger, Enum, DateTime, Date, ForeignKey, Text,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lendledger.database import Base
from lendledger.services.money import Money


class LoanStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    FUNDED = "funded"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DEFAULTED = "defaulted"


class LoanPurpose(str, enum.Enum):
    PERSONAL = "personal"
    BUSINESS = "business"
    EDUCATION = "education"
    MEDICAL = "medical"
    HOME_IMPROVEMENT = "home-improvement"
    DEBT_CONSOLIDATION = "debt-consolidation"
    EMERGENCY = "emergency"
    WEDDING = "wedding"
    VACATION = "vacation"
    OTHER = "other"


class LoanCategory(str, enum.Enum):
    UNSECURED = "unsecured"
    SECURED = "secured"


class CollateralType(str, enum.Enum):
    REAL_ESTATE = "real-estate"
    VEHICLE = "vehicle"
    EQUIPMENT = "equipment"
    JEWELRY = "jewelry"
    OTHER = "other"


class InstallmentStatus(str, enum.Enum):
    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint(
            "funded_amount_minor >= 0 AND funded_amount_minor <= amount_minor",
            name="ck_loan_funded_within_amount",
        ),
        CheckConstraint("amount_minor > 0", name="ck_loan_amount_positive"),
        Index("ix_loans_status", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    borrower_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    purpose: Mapped[LoanPurpose] = mapped_column(Enum(LoanPurpose), nullable=False)
    category: Mapped[LoanCategory] = mapped_column(
        Enum(LoanCategory), default=LoanCategory.UNSECURED, nullable=False
    )

    # Collateral (secured loans only)
    collateral_type: Mapped[CollateralType | None] = mapped_column(Enum(CollateralType), nullable=True)
    collateral_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    collateral_value_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Terms
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)

    # Status & funding
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.DRAFT, nullable=False
    )
    funded_amount_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Materialized when the schedule is built
    monthly_payment_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_interest_minor: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Timestamps
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    contributions = relationship(
        "FundingContribution",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="FundingContribution.id",
        lazy="selectin",
    )
    installments = relationship(
        "Installment",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="Installment.number",
        lazy="selectin",
    )
    timeline = relationship(
        "LoanTimelineEntry",
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanTimelineEntry.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor, self.currency)

    @property
    def funded_amount(self) -> Money:
        return Money(self.funded_amount_minor, self.currency)

    @property
    def remaining_amount(self) -> Money:
        return self.amount - self.funded_amount

    @property
    def funded_percentage(self) -> Decimal:
        return (Decimal(self.funded_amount_minor) * 100 / Decimal(self.amount_minor)).quantize(Decimal("0.01"))

    @property
    def settlement_party(self) -> str:
        """Ledger party that receives repayments before they are distributed to lenders."""
        return f"loan:{self.id}"


class FundingContribution(Base):
    """A lender's committed share of a loan's principal."""

    __tablename__ = "funding_contributions"
    __table_args__ = (
        UniqueConstraint("loan_id", "lender_id", name="uq_contribution_loan_lender"),
        CheckConstraint("amount_minor > 0", name="ck_contribution_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    lender_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=True
    )
    contributed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    loan = relationship("Loan", back_populates="contributions")


class Installment(Base):
    __tablename__ = "loan_installments"
    __table_args__ = (
        UniqueConstraint("loan_id", "number", name="uq_installment_loan_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    principal_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    interest_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    late_fee_minor: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[InstallmentStatus] = mapped_column(
        Enum(InstallmentStatus), default=InstallmentStatus.PENDING, nullable=False
    )
    # Repayment currently settling this installment (or the one that paid it)
    transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_transactions.id"), nullable=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    loan = relationship("Loan", back_populates="installments")

    @property
    def amount_due_minor(self) -> int:
        return self.principal_minor + self.interest_minor + self.late_fee_minor


class LoanTimelineEntry(Base):
    """Append-only status history of a loan."""

    __tablename__ = "loan_timeline"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    status: Mapped[LoanStatus] = mapped_column(Enum(LoanStatus), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    loan = relationship("Loan", back_populates="timeline")
