"""
Module: bnpl_kernel.models.contract
Responsibility: ORM persistence for BNPL contracts, their installments and
    their lifecycle transition history.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/lifecycle.py only.

Invariants enforced:
    - total_payable == principal + processing_fee (CHECK constraint).
    - sum(installments.amount_due) == total_payable (established by the
      schedule engine at creation; amounts are never edited afterwards).
    - state changes only through ``record_transition``, which the lifecycle's
      ``transition()`` calls after validating the edge.
    - ``version`` is SQLAlchemy's version counter: a stale concurrent writer
      fails with StaleDataError instead of overwriting state.
    - Contracts are never deleted.

Audit relevance:
    ContractTransition rows are append-only (db/immutability.py) and give
    the full who/when/why history of every contract.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bnpl_kernel.db.base import Base, TrackedBase, UUIDString
from bnpl_kernel.domain.lifecycle import (
    ContractState,
    StateTransition,
    TERMINAL_STATES,
)


class ExternalStatus(str, Enum):
    """Escrow-side confirmation flag, distinct from the lifecycle state."""

    CONFIRMED = "CONFIRMED"
    PENDING_EXTERNAL = "PENDING_EXTERNAL"


class LedgerBookingStatus(str, Enum):
    """Downstream loan-ledger booking flag."""

    NOT_BOOKED = "NOT_BOOKED"
    PENDING = "PENDING"
    BOOKED = "BOOKED"


class InstallmentStatus(str, Enum):
    PENDING = "PENDING"
    SENT_TO_EMPLOYER = "SENT_TO_EMPLOYER"
    DEDUCTED = "DEDUCTED"  # partially paid
    PAID = "PAID"
    OVERDUE = "OVERDUE"


UNPAID_INSTALLMENT_STATUSES = frozenset({
    InstallmentStatus.PENDING,
    InstallmentStatus.SENT_TO_EMPLOYER,
    InstallmentStatus.DEDUCTED,
    InstallmentStatus.OVERDUE,
})


class Contract(TrackedBase):
    """
    A financed purchase repaid by payroll deduction.

    Contract:
        Owns its installments and is the unit of lifecycle control.
    """

    __tablename__ = "contracts"

    __table_args__ = (
        CheckConstraint(
            "total_payable = principal + processing_fee",
            name="ck_contract_total_payable",
        ),
        Index("idx_contract_employee", "employee_id"),
        Index("idx_contract_lender", "lender_id"),
        Index("idx_contract_state", "state"),
    )

    employee_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("employees.id"), nullable=False
    )
    employer_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("employers.id"), nullable=False
    )
    merchant_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("merchants.id"), nullable=False
    )
    lender_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("lenders.id"), nullable=False
    )

    principal: Mapped[Decimal] = mapped_column(nullable=False)
    tenor_days: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(nullable=False)
    total_payable: Mapped[Decimal] = mapped_column(nullable=False)
    installment_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_due: Mapped[Decimal] = mapped_column(nullable=False)

    state: Mapped[ContractState] = mapped_column(
        String(30), nullable=False, default=ContractState.PRE_APPROVED.value
    )
    external_status: Mapped[ExternalStatus] = mapped_column(
        String(20), nullable=False, default=ExternalStatus.CONFIRMED.value
    )
    ledger_status: Mapped[LedgerBookingStatus] = mapped_column(
        String(20), nullable=False, default=LedgerBookingStatus.NOT_BOOKED.value
    )
    external_loan_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Decision trail
    allocation_strategy: Mapped[str] = mapped_column(String(30), nullable=False)
    allocation_reason: Mapped[str] = mapped_column(String(500), nullable=False)
    decision_reasoning: Mapped[str] = mapped_column(String(1000), nullable=False)
    confidence_score: Mapped[Decimal] = mapped_column(nullable=False)

    opened_at: Mapped[datetime] = mapped_column(nullable=False)
    authorized_at: Mapped[datetime | None] = mapped_column(nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    installments: Mapped[list["Installment"]] = relationship(
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="Installment.number",
        lazy="selectin",
    )
    transitions: Mapped[list["ContractTransition"]] = relationship(
        back_populates="contract",
        cascade="all",
        order_by="ContractTransition.sequence",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def record_transition(self, transition: StateTransition) -> None:
        """Apply an already-validated transition (see lifecycle.transition)."""
        target = transition.to_state
        self.state = target.value
        self.transitions.append(
            ContractTransition(
                sequence=len(self.transitions) + 1,
                from_state=transition.from_state.value,
                to_state=target.value,
                reason=transition.reason,
                actor_id=transition.actor_id,
                occurred_at=transition.occurred_at,
            )
        )
        if target == ContractState.CUSTOMER_AUTHORIZED:
            self.authorized_at = transition.occurred_at
        elif target == ContractState.DISBURSED:
            self.funded_at = transition.occurred_at
        elif target in TERMINAL_STATES:
            self.closed_at = transition.occurred_at

    @property
    def outstanding(self) -> Decimal:
        return self.total_payable - self.total_paid

    def all_installments_paid(self) -> bool:
        return all(i.status == InstallmentStatus.PAID for i in self.installments)

    def __repr__(self) -> str:
        return f"<Contract {self.id} {self.state} {self.principal}>"


class Installment(TrackedBase):
    """One scheduled payroll deduction of a contract."""

    __tablename__ = "installments"

    __table_args__ = (
        UniqueConstraint("contract_id", "number", name="uq_installment_number"),
        Index("idx_installment_due_date", "due_date"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    status: Mapped[InstallmentStatus] = mapped_column(
        String(20), nullable=False, default=InstallmentStatus.PENDING.value
    )
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    contract: Mapped[Contract] = relationship(back_populates="installments")

    @property
    def outstanding(self) -> Decimal:
        return self.amount_due - self.amount_paid


class ContractTransition(Base):
    """Append-only lifecycle history row."""

    __tablename__ = "contract_transitions"

    __table_args__ = (
        UniqueConstraint("contract_id", "sequence", name="uq_transition_sequence"),
    )

    contract_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("contracts.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_state: Mapped[str] = mapped_column(String(30), nullable=False)
    to_state: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    contract: Mapped[Contract] = relationship(back_populates="transitions")
