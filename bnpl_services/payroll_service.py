"""
bnpl_services.payroll_service -- Employer payroll cycle handling.

Responsibility:
    Exports the monthly deduction sheet an employer runs through payroll,
    flags installments past their due date, and derives an employee's
    risk tier from the configured salary bands.

Architecture position:
    Services.  Reads and updates DeductionInstruction and Installment rows;
    remittances coming back from the employer are applied by
    SettlementService.post_payroll_remittance.

Invariants enforced:
    - Only PENDING_PAYROLL instructions are exported, so re-exporting a
      cycle never sends a deduction twice.
    - Only contracts in IN_REPAYMENT are exported.
    - Only installments of contracts in IN_REPAYMENT become OVERDUE.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_engines.credit import risk_tier_for_salary
from bnpl_kernel.domain.amounts import ZERO
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.domain.lifecycle import ContractState
from bnpl_kernel.exceptions import ValidationError
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.contract import Contract, Installment, InstallmentStatus
from bnpl_kernel.models.party import Employee
from bnpl_kernel.models.settlement import DeductionInstruction, DeductionStatus
from bnpl_kernel.repositories import EmployerRepository
from bnpl_kernel.services.base import BaseService

logger = get_logger("services.payroll")

_OVERDUE_CANDIDATES = (
    InstallmentStatus.PENDING.value,
    InstallmentStatus.SENT_TO_EMPLOYER.value,
    InstallmentStatus.DEDUCTED.value,
)


@dataclass(frozen=True)
class DeductionLine:
    instruction_id: str
    employee_id: str
    employee_name: str
    national_id: str
    contract_id: str
    installment_number: int
    due_date: date
    amount: Decimal


@dataclass(frozen=True)
class DeductionSheet:
    employer_id: str
    payroll_cycle: str
    lines: tuple[DeductionLine, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)


def validate_cycle(cycle: str) -> str:
    """``YYYY-MM`` or ValidationError."""
    year, _, month = cycle.partition("-")
    if len(year) != 4 or len(month) != 2 or not (year + month).isdigit() or not 1 <= int(month) <= 12:
        raise ValidationError(f"Payroll cycle must be YYYY-MM, got {cycle!r}", field="payroll_cycle")
    return cycle


class PayrollService(BaseService):

    def __init__(
        self,
        session: Session,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._policy = policy or get_active_policy()
        self._clock = clock or SystemClock()
        self._employers = EmployerRepository(session)

    def instructions(
        self,
        employer_id: UUID,
        cycle: str,
        statuses: tuple[DeductionStatus, ...] | None = None,
        contract_state: ContractState | None = None,
    ) -> list[DeductionInstruction]:
        stmt = select(DeductionInstruction).where(
            DeductionInstruction.employer_id == employer_id,
            DeductionInstruction.payroll_cycle == validate_cycle(cycle),
        )
        if statuses:
            stmt = stmt.where(DeductionInstruction.status.in_([s.value for s in statuses]))
        if contract_state is not None:
            stmt = stmt.join(Contract, Contract.id == DeductionInstruction.contract_id).where(
                Contract.state == contract_state.value
            )
        return list(self.session.execute(stmt.order_by(DeductionInstruction.created_at)).scalars().all())

    def export_cycle(self, employer_id: UUID, cycle: str) -> DeductionSheet:
        """
        Mark the cycle's pending instructions SENT and return the sheet.

        Only contracts in IN_REPAYMENT are deducted; a disputed contract's
        instructions wait until the dispute is resolved.
        """
        with LogContext.bind(employer_id=employer_id):
            self._employers.require(employer_id)
            pending = self.instructions(
                employer_id, cycle, (DeductionStatus.PENDING_PAYROLL,), ContractState.IN_REPAYMENT,
            )
            lines: list[DeductionLine] = []
            for instruction in pending:
                installment = self.session.get(Installment, instruction.installment_id)
                employee = self.session.get(Employee, instruction.employee_id)
                instruction.status = DeductionStatus.SENT.value
                if installment.status == InstallmentStatus.PENDING:
                    installment.status = InstallmentStatus.SENT_TO_EMPLOYER.value
                lines.append(DeductionLine(
                    instruction_id=str(instruction.id),
                    employee_id=str(employee.id),
                    employee_name=employee.full_name,
                    national_id=employee.national_id,
                    contract_id=str(instruction.contract_id),
                    installment_number=installment.number,
                    due_date=installment.due_date,
                    amount=instruction.monthly_amount,
                ))
            self.session.flush()

            sheet = DeductionSheet(str(employer_id), cycle, tuple(lines))
            logger.info("payroll_cycle_exported", extra={
                "payroll_cycle": cycle,
                "lines": len(lines),
                "total_amount": str(sheet.total_amount),
            })
            return sheet

    def mark_overdue(self, as_of: date | None = None) -> int:
        """Flag unpaid installments due before ``as_of``; returns the count."""
        as_of = as_of or self._clock.today()
        installments = self.session.execute(
            select(Installment)
            .join(Contract, Contract.id == Installment.contract_id)
            .where(
                Contract.state == ContractState.IN_REPAYMENT.value,
                Installment.due_date < as_of,
                Installment.status.in_(_OVERDUE_CANDIDATES),
            )
        ).scalars().all()
        for installment in installments:
            installment.status = InstallmentStatus.OVERDUE.value
        self.session.flush()
        if installments:
            logger.warning("installments_overdue", extra={
                "count": len(installments), "as_of": as_of.isoformat(),
            })
        return len(installments)

    def risk_tier_for_salary(self, net_salary: Decimal) -> str:
        return risk_tier_for_salary(net_salary, self._policy.credit.salary_bands())
