"""
Module: bnpl_kernel.selectors.contract_selector
Responsibility: Read-only views of contracts with their installments and
    lifecycle history, for order lookups and lender portfolios.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Installments are ordered by number and transitions by sequence.
    - Returns None or an empty list when nothing matches; never raises on
      absence of data.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from bnpl_kernel.domain.lifecycle import ContractState
from bnpl_kernel.models.contract import (
    UNPAID_INSTALLMENT_STATUSES,
    Contract,
    InstallmentStatus,
)
from bnpl_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class InstallmentView:
    number: int
    due_date: date
    amount_due: Decimal
    amount_paid: Decimal
    status: InstallmentStatus

    @property
    def outstanding(self) -> Decimal:
        return self.amount_due - self.amount_paid

    @property
    def is_unpaid(self) -> bool:
        return self.status in UNPAID_INSTALLMENT_STATUSES


@dataclass(frozen=True)
class TransitionView:
    sequence: int
    from_state: str
    to_state: str
    reason: str
    occurred_at: datetime


@dataclass(frozen=True)
class ContractView:
    id: UUID
    employee_id: UUID
    employer_id: UUID
    merchant_id: UUID
    lender_id: UUID
    state: ContractState
    principal: Decimal
    processing_fee: Decimal
    total_payable: Decimal
    total_paid: Decimal
    installment_amount: Decimal
    tenor_days: int
    external_status: str
    ledger_status: str
    external_loan_id: str | None
    opened_at: datetime
    funded_at: datetime | None
    closed_at: datetime | None
    installments: tuple[InstallmentView, ...]
    history: tuple[TransitionView, ...]

    @property
    def outstanding(self) -> Decimal:
        return self.total_payable - self.total_paid

    def days_past_due(self, as_of: date) -> int:
        """Age in days of the oldest unpaid installment past its due date."""
        overdue = [
            (as_of - i.due_date).days
            for i in self.installments
            if i.is_unpaid and i.due_date < as_of
        ]
        return max(overdue, default=0)


class ContractSelector(BaseSelector):

    @staticmethod
    def _to_view(contract: Contract) -> ContractView:
        return ContractView(
            id=contract.id,
            employee_id=contract.employee_id,
            employer_id=contract.employer_id,
            merchant_id=contract.merchant_id,
            lender_id=contract.lender_id,
            state=ContractState(contract.state),
            principal=contract.principal,
            processing_fee=contract.processing_fee,
            total_payable=contract.total_payable,
            total_paid=contract.total_paid,
            installment_amount=contract.installment_amount,
            tenor_days=contract.tenor_days,
            external_status=contract.external_status,
            ledger_status=contract.ledger_status,
            external_loan_id=contract.external_loan_id,
            opened_at=contract.opened_at,
            funded_at=contract.funded_at,
            closed_at=contract.closed_at,
            installments=tuple(
                InstallmentView(
                    number=i.number,
                    due_date=i.due_date,
                    amount_due=i.amount_due,
                    amount_paid=i.amount_paid,
                    status=InstallmentStatus(i.status),
                )
                for i in contract.installments
            ),
            history=tuple(
                TransitionView(
                    sequence=t.sequence,
                    from_state=t.from_state,
                    to_state=t.to_state,
                    reason=t.reason,
                    occurred_at=t.occurred_at,
                )
                for t in contract.transitions
            ),
        )

    def get(self, contract_id: UUID) -> ContractView | None:
        contract = self.session.get(Contract, contract_id)
        return self._to_view(contract) if contract is not None else None

    def list_for_lender(
        self,
        lender_id: UUID,
        states: Iterable[ContractState] | None = None,
    ) -> list[ContractView]:
        stmt = select(Contract).where(Contract.lender_id == lender_id)
        if states is not None:
            stmt = stmt.where(Contract.state.in_([s.value for s in states]))
        contracts = self.session.execute(stmt.order_by(Contract.opened_at)).scalars().all()
        return [self._to_view(c) for c in contracts]

    def list_for_employee(self, employee_id: UUID) -> list[ContractView]:
        contracts = self.session.execute(
            select(Contract)
            .where(Contract.employee_id == employee_id)
            .order_by(Contract.opened_at)
        ).scalars().all()
        return [self._to_view(c) for c in contracts]
