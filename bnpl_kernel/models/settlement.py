"""
Money-movement facts: ledger entries, escrow transactions, payroll deduction
instructions and employer remittances.

LedgerEntry and EscrowTransaction reference contracts by id only (weak
reference); they are facts about a contract, not parts of it.  LedgerEntry is
append-only (db/immutability.py) and the entries of one economic event, which
share an ``event_key``, net to zero across accounts.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bnpl_kernel.db.base import Base, TrackedBase, UUIDString


class LedgerEntryType(str, Enum):
    DISBURSEMENT = "DISBURSEMENT"
    REPAYMENT = "REPAYMENT"
    FEE = "FEE"
    REVERSAL = "REVERSAL"


class LedgerAccount(str, Enum):
    LENDER = "LENDER"
    ESCROW = "ESCROW"
    MERCHANT = "MERCHANT"
    PLATFORM = "PLATFORM"
    EMPLOYER_PAYROLL = "EMPLOYER_PAYROLL"


class LedgerEntry(Base):
    """Signed, append-only posting against one account."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("idx_ledger_contract", "contract_id"),
        Index("idx_ledger_event", "event_key"),
    )

    contract_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    entry_type: Mapped[LedgerEntryType] = mapped_column(String(20), nullable=False)
    account: Mapped[LedgerAccount] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reference: Mapped[str] = mapped_column(String(200), nullable=False)
    event_key: Mapped[str] = mapped_column(String(300), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)


class EscrowTransactionKind(str, Enum):
    HOLD = "HOLD"
    RELEASE = "RELEASE"
    REFUND = "REFUND"


class EscrowTransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class EscrowTransaction(TrackedBase):
    """One call to the escrow provider and its outcome."""

    __tablename__ = "escrow_transactions"

    __table_args__ = (
        Index("idx_escrow_contract", "contract_id"),
        Index("idx_escrow_settlement_date", "settlement_date"),
    )

    contract_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[EscrowTransactionKind] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[EscrowTransactionStatus] = mapped_column(String(10), nullable=False)
    reference: Mapped[str] = mapped_column(String(200), nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    settlement_date: Mapped[date] = mapped_column(Date, nullable=False)


class DeductionStatus(str, Enum):
    PENDING_PAYROLL = "PENDING_PAYROLL"
    SENT = "SENT"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class DeductionInstruction(TrackedBase):
    """Payroll instruction for one installment, generated after funding."""

    __tablename__ = "deduction_instructions"

    __table_args__ = (
        UniqueConstraint("installment_id", name="uq_deduction_installment"),
        Index("idx_deduction_employer_cycle", "employer_id", "payroll_cycle"),
    )

    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("employees.id"), nullable=False
    )
    employer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("employers.id"), nullable=False
    )
    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    installment_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("installments.id"), nullable=False
    )
    monthly_amount: Mapped[Decimal] = mapped_column(nullable=False)
    payroll_cycle: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    status: Mapped[DeductionStatus] = mapped_column(
        String(20), nullable=False, default=DeductionStatus.PENDING_PAYROLL.value
    )


class PayrollRemittance(Base):
    """Employer remittance as received; the payroll channel's report."""

    __tablename__ = "payroll_remittances"

    __table_args__ = (
        Index("idx_remittance_employer_cycle", "employer_id", "payroll_cycle"),
    )

    employer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("employers.id"), nullable=False
    )
    payroll_cycle: Mapped[str] = mapped_column(String(7), nullable=False)
    reference: Mapped[str] = mapped_column(String(200), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    applied_amount: Mapped[Decimal] = mapped_column(nullable=False)
    line_count: Mapped[int] = mapped_column(Integer, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
