from uuid import UUID

from fastapi import APIRouter, Depends, Query

from bnpl_api.deps import ApiContainer, get_container, require_idempotency_key
from bnpl_api.envelope import ok
from bnpl_api.schemas import PayrollExportIn, RemittanceIn
from bnpl_services.payroll_service import PayrollService
from bnpl_services.settlement_service import Remittance, RemittanceLine, SettlementService

router = APIRouter(prefix="/employer", tags=["Employer"])


@router.post("/{employer_id}/remittance")
def post_remittance(
    employer_id: UUID,
    body: RemittanceIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    remittance = Remittance(
        employer_id=employer_id,
        payroll_cycle=body.payroll_cycle,
        reference=body.reference,
        lines=tuple(
            RemittanceLine(line.contract_id, line.amount, line.reference)
            for line in body.lines
        ),
    )
    with container.unit_of_work() as session:
        result = SettlementService(
            session, container.escrow, policy=container.policy, clock=container.clock,
        ).post_payroll_remittance(remittance, key)
    data = result.to_dict()
    data["replayed"] = result.replayed
    return ok(data)


@router.post("/{employer_id}/payroll-export")
def export_payroll(
    employer_id: UUID,
    body: PayrollExportIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        sheet = PayrollService(session, policy=container.policy, clock=container.clock).export_cycle(
            employer_id, body.payroll_cycle,
        )
    data = ok(sheet)
    data["data"]["totalAmount"] = str(sheet.total_amount)
    return data


@router.get("/{employer_id}/deductions")
def list_deductions(
    employer_id: UUID,
    cycle: str = Query(pattern=r"^\d{4}-\d{2}$"),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        instructions = PayrollService(session, policy=container.policy).instructions(employer_id, cycle)
        data = [
            {
                "instructionId": i.id,
                "contractId": i.contract_id,
                "employeeId": i.employee_id,
                "amount": i.monthly_amount,
                "status": i.status,
            }
            for i in instructions
        ]
    return ok(data)
