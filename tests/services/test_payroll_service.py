"""
Tests for payroll cycle export, overdue flagging and salary tiers.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from bnpl_kernel.exceptions import PartyNotFoundError, ValidationError
from bnpl_kernel.models.contract import Contract, InstallmentStatus
from bnpl_kernel.models.settlement import DeductionStatus
from bnpl_services.payroll_service import PayrollService, validate_cycle


@pytest.fixture
def payroll(session, policy, deterministic_clock) -> PayrollService:
    return PayrollService(session, policy=policy, clock=deterministic_clock)


class TestValidateCycle:

    @pytest.mark.parametrize("cycle", ["2024-01", "2023-12"])
    def test_valid(self, cycle):
        assert validate_cycle(cycle) == cycle

    @pytest.mark.parametrize("cycle", ["2024-13", "2024-00", "2024/01", "24-01", "2024-1", "", "abcd-ef"])
    def test_invalid(self, cycle):
        with pytest.raises(ValidationError):
            validate_cycle(cycle)


class TestInstructions:

    def test_cycle_lists_its_instructions(self, funded_contract, payroll, seed):
        funded_contract()

        assert len(payroll.instructions(seed.employer.id, "2024-01")) == 1
        assert len(payroll.instructions(seed.employer.id, "2024-03")) == 2
        assert payroll.instructions(seed.employer.id, "2024-02") == []

    def test_status_filter(self, funded_contract, payroll, seed):
        funded_contract()
        payroll.export_cycle(seed.employer.id, "2024-01")

        assert payroll.instructions(seed.employer.id, "2024-01", (DeductionStatus.PENDING_PAYROLL,)) == []
        assert len(payroll.instructions(seed.employer.id, "2024-01", (DeductionStatus.SENT,))) == 1


class TestExportCycle:

    def test_sheet_lists_deductions(self, funded_contract, payroll, seed):
        contract_id = funded_contract()

        sheet = payroll.export_cycle(seed.employer.id, "2024-01")

        (line,) = sheet.lines
        assert line.contract_id == str(contract_id)
        assert line.employee_name == "Grace Namubiru"
        assert line.installment_number == 1
        assert line.due_date == date(2024, 1, 31)
        assert sheet.total_amount == Decimal("67333")

    def test_export_marks_installments_sent(self, session, funded_contract, payroll, seed):
        contract_id = funded_contract()

        payroll.export_cycle(seed.employer.id, "2024-01")

        installments = session.get(Contract, contract_id).installments
        assert installments[0].status == InstallmentStatus.SENT_TO_EMPLOYER
        assert installments[1].status == InstallmentStatus.PENDING

    def test_re_export_sends_nothing_twice(self, funded_contract, payroll, seed):
        funded_contract()
        payroll.export_cycle(seed.employer.id, "2024-03")

        again = payroll.export_cycle(seed.employer.id, "2024-03")

        assert again.lines == ()
        assert again.total_amount == Decimal("0")

    def test_unknown_employer(self, seed, payroll):
        with pytest.raises(PartyNotFoundError):
            payroll.export_cycle(uuid4(), "2024-01")

    def test_refunded_contract_is_not_deducted(self, funded_contract, settlement_service, payroll, seed):
        contract_id = funded_contract()
        settlement_service.refund(contract_id, Decimal("200000"), "Goods returned", "rf-1")

        sheet = payroll.export_cycle(seed.employer.id, "2024-01")

        assert sheet.lines == ()
        statuses = {i.status for i in payroll.instructions(seed.employer.id, "2024-03")}
        assert statuses == {DeductionStatus.FAILED.value}

    def test_defaulted_contract_stops_sent_deductions(self, funded_contract, settlement_service, payroll, seed):
        contract_id = funded_contract()
        payroll.export_cycle(seed.employer.id, "2024-01")

        settlement_service.mark_defaulted(contract_id, "Employee left employer")

        (instruction,) = payroll.instructions(seed.employer.id, "2024-01")
        assert instruction.status == DeductionStatus.FAILED
        assert payroll.export_cycle(seed.employer.id, "2024-03").lines == ()

    def test_disputed_contract_waits_for_resolution(self, funded_contract, settlement_service, payroll, seed):
        contract_id = funded_contract()
        settlement_service.open_dispute(contract_id, "Item damaged")

        assert payroll.export_cycle(seed.employer.id, "2024-01").lines == ()

        settlement_service.resolve_dispute(contract_id, "Replacement delivered")

        (line,) = payroll.export_cycle(seed.employer.id, "2024-01").lines
        assert line.contract_id == str(contract_id)


class TestMarkOverdue:

    def test_past_due_installment_flagged(self, session, funded_contract, payroll):
        contract_id = funded_contract()

        assert payroll.mark_overdue(as_of=date(2024, 2, 15)) == 1
        assert session.get(Contract, contract_id).installments[0].status == InstallmentStatus.OVERDUE

    def test_flagging_is_not_repeated(self, funded_contract, payroll):
        funded_contract()
        payroll.mark_overdue(as_of=date(2024, 2, 15))

        assert payroll.mark_overdue(as_of=date(2024, 2, 15)) == 0

    def test_due_today_is_not_overdue(self, funded_contract, payroll):
        funded_contract()

        assert payroll.mark_overdue(as_of=date(2024, 1, 31)) == 0

    def test_contracts_not_in_repayment_ignored(self, authorized_contract, payroll):
        authorized_contract()

        assert payroll.mark_overdue(as_of=date(2024, 6, 1)) == 0

    def test_defaults_to_clock_day(self, funded_contract, payroll, deterministic_clock):
        funded_contract()
        deterministic_clock.advance_days(45)

        assert payroll.mark_overdue() == 1


class TestRiskTierForSalary:

    @pytest.mark.parametrize("salary,tier", [
        ("1500000", "TIER_1"),
        ("750000", "TIER_2"),
        ("300000", "TIER_3"),
    ])
    def test_policy_bands(self, payroll, salary, tier):
        assert payroll.risk_tier_for_salary(Decimal(salary)) == tier
