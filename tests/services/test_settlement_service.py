"""
Tests for the escrow and settlement orchestrator.

Covers:
- Hold and release: transitions, balanced ledger events, deduction
  instructions, loan-booking event
- Escrow failures become PENDING_RETRY plus a retry event
- Refunds before and after release
- Payroll remittances, line isolation and contract closure
- Disputes, defaults, cancellation and capital release
"""

from collections import defaultdict
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from bnpl_kernel.domain.lifecycle import ContractState
from bnpl_kernel.exceptions import (
    ExternalGatewayError,
    IllegalTransitionError,
    ValidationError,
)
from bnpl_kernel.models.contract import Contract, ExternalStatus, InstallmentStatus
from bnpl_kernel.models.lender import Lender
from bnpl_kernel.models.outbox import OutboxEvent
from bnpl_kernel.models.party import Employer
from bnpl_kernel.models.settlement import (
    DeductionInstruction,
    DeductionStatus,
    EscrowTransaction,
    LedgerEntry,
    PayrollRemittance,
)
from bnpl_services.settlement_service import (
    LOAN_BOOKING_EVENT,
    REPAYMENT_EVENT,
    RETRY_EVENT,
    Remittance,
    RemittanceLine,
    SettlementStatus,
)
from tests.conftest import SECOND_EMPLOYEE_PHONE, TEST_ACTOR_ID


def _ledger(session, contract_id: UUID) -> list[LedgerEntry]:
    return list(session.execute(
        select(LedgerEntry).where(LedgerEntry.contract_id == contract_id)
    ).scalars().all())


def _balances(session, contract_id: UUID) -> dict[str, Decimal]:
    balances: dict[str, Decimal] = defaultdict(Decimal)
    for entry in _ledger(session, contract_id):
        balances[entry.account] += entry.amount
    return dict(balances)


def _events(session, contract_id: UUID, event_type: str) -> list[OutboxEvent]:
    return list(session.execute(
        select(OutboxEvent).where(
            OutboxEvent.aggregate_id == str(contract_id),
            OutboxEvent.event_type == event_type,
        )
    ).scalars().all())


def _utilized(session, lender_id: UUID) -> Decimal:
    return session.get(Lender, lender_id).capital_utilized


def _remit(settlement_service, seed, *lines: tuple[UUID, str], key: str | None = None, cycle: str = "2024-01"):
    remittance = Remittance(
        employer_id=seed.employer.id,
        payroll_cycle=cycle,
        reference=f"PAY-{uuid4().hex[:8]}",
        lines=tuple(RemittanceLine(contract_id=cid, amount=Decimal(amount)) for cid, amount in lines),
    )
    return settlement_service.post_payroll_remittance(
        remittance, key or f"rem-{uuid4()}", actor_id=TEST_ACTOR_ID,
    )


class TestHold:

    def test_hold_moves_to_escrow_held(self, session, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()

        result = settlement_service.hold_funds(contract_id, "hold-1", actor_id=TEST_ACTOR_ID)

        assert result.status == SettlementStatus.COMPLETED
        assert result.state == ContractState.ESCROW_HELD
        assert Decimal(result.amount) == Decimal("200000")
        assert escrow.count("hold") == 1

    def test_hold_posts_balanced_ledger_event(self, session, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        assert _balances(session, contract_id) == {
            "LENDER": Decimal("-200000"),
            "ESCROW": Decimal("200000"),
        }

    def test_hold_replay_does_not_call_escrow_twice(self, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        replay = settlement_service.hold_funds(contract_id, "hold-1")

        assert replay.replayed is True
        assert escrow.count("hold") == 1

    def test_hold_requires_customer_authorization(self, checkout, settlement_service):
        contract_id = UUID(checkout().contract_id)

        with pytest.raises(IllegalTransitionError):
            settlement_service.hold_funds(contract_id, "hold-1")

    def test_hold_amount_must_equal_principal(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()

        with pytest.raises(ValidationError):
            settlement_service.hold_funds(contract_id, "hold-1", amount=Decimal("150000"))

    def test_escrow_failure_becomes_pending_retry(self, session, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        escrow.fail_next("hold")

        result = settlement_service.hold_funds(contract_id, "hold-1")

        contract = session.get(Contract, contract_id)
        assert result.status == SettlementStatus.PENDING_RETRY
        assert contract.state == ContractState.CUSTOMER_AUTHORIZED
        assert contract.external_status == ExternalStatus.PENDING_EXTERNAL
        assert len(_events(session, contract_id, RETRY_EVENT)) == 1
        assert _ledger(session, contract_id) == []

    def test_failed_escrow_call_is_recorded(self, session, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        escrow.fail_next("hold")
        settlement_service.hold_funds(contract_id, "hold-1")

        (txn,) = session.execute(
            select(EscrowTransaction).where(EscrowTransaction.contract_id == contract_id)
        ).scalars().all()
        assert txn.status == "FAILED"
        assert txn.failure_reason == "hold declined by provider"

    def test_pending_result_is_not_cached(self, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        escrow.fail_next("hold")
        settlement_service.hold_funds(contract_id, "hold-1")

        result = settlement_service.hold_funds(contract_id, "hold-1")

        assert result.status == SettlementStatus.COMPLETED
        assert result.replayed is False

    def test_retry_completes_the_hold(self, session, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        escrow.fail_next("hold")
        settlement_service.hold_funds(contract_id, "hold-1")

        result = settlement_service.retry({"contract_id": str(contract_id), "operation": "hold"})

        assert result.status == SettlementStatus.COMPLETED
        assert session.get(Contract, contract_id).external_status == ExternalStatus.CONFIRMED

    def test_retry_failure_raises_for_backoff(self, authorized_contract, settlement_service, escrow):
        contract_id = authorized_contract()
        escrow.fail_next("hold", times=2)
        settlement_service.hold_funds(contract_id, "hold-1")

        with pytest.raises(ExternalGatewayError):
            settlement_service.retry({"contract_id": str(contract_id), "operation": "hold"})

    def test_retry_skips_confirmed_contract(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        assert settlement_service.retry({"contract_id": str(contract_id), "operation": "hold"}) is None


class TestRelease:

    def test_release_starts_repayment(self, session, funded_contract):
        contract_id = funded_contract()

        contract = session.get(Contract, contract_id)
        assert contract.state == ContractState.IN_REPAYMENT
        assert contract.funded_at is not None
        assert [t.to_state for t in contract.transitions][-2:] == ["DISBURSED", "IN_REPAYMENT"]

    def test_release_pays_merchant_net_of_platform_share(self, session, funded_contract, escrow):
        contract_id = funded_contract()

        assert _balances(session, contract_id) == {
            "LENDER": Decimal("-200000"),
            "ESCROW": Decimal("0"),
            "MERCHANT": Decimal("199000"),
            "PLATFORM": Decimal("1000"),
        }
        (release,) = [c for c in escrow.calls if c.operation == "release"]
        assert release.amount == Decimal("199000")

    def test_every_ledger_event_nets_to_zero(self, session, funded_contract):
        contract_id = funded_contract()

        by_event: dict[str, Decimal] = defaultdict(Decimal)
        for entry in _ledger(session, contract_id):
            by_event[entry.event_key] += entry.amount
        assert len(by_event) == 2
        assert all(total == 0 for total in by_event.values())

    def test_release_creates_deduction_instructions(self, session, funded_contract):
        contract_id = funded_contract()

        instructions = session.execute(
            select(DeductionInstruction).where(DeductionInstruction.contract_id == contract_id)
        ).scalars().all()
        assert sorted(i.payroll_cycle for i in instructions) == ["2024-01", "2024-03", "2024-03"]
        assert {i.status for i in instructions} == {DeductionStatus.PENDING_PAYROLL.value}

    def test_release_requests_loan_booking(self, session, funded_contract):
        contract_id = funded_contract()

        assert len(_events(session, contract_id, LOAN_BOOKING_EVENT)) == 1
        assert session.get(Contract, contract_id).ledger_status == "PENDING"

    def test_release_before_hold_is_illegal(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()

        with pytest.raises(IllegalTransitionError):
            settlement_service.release_funds(contract_id, "release-1")

    def test_confirm_delivery_releases(self, session, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        result = settlement_service.confirm_delivery(contract_id, "delivery-1")

        assert result.state == ContractState.IN_REPAYMENT


class TestRefund:

    def test_full_refund_of_hold_cancels(self, session, authorized_contract, settlement_service, seed):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        result = settlement_service.refund(contract_id, Decimal("200000"), "out of stock", "refund-1")

        assert result.state == ContractState.CANCELLED
        assert _balances(session, contract_id) == {"LENDER": Decimal("0"), "ESCROW": Decimal("0")}
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("0")

    def test_partial_refund_of_hold_rejected(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        with pytest.raises(ValidationError):
            settlement_service.refund(contract_id, Decimal("50000"), "partial", "refund-1")

    def test_partial_refund_after_release_disputes(self, session, funded_contract, settlement_service):
        contract_id = funded_contract()

        result = settlement_service.refund(contract_id, Decimal("50000"), "damaged item", "refund-1")

        assert result.state == ContractState.DISPUTED
        assert settlement_service.refunded_total(contract_id) == Decimal("50000")
        assert _balances(session, contract_id)["MERCHANT"] == Decimal("149000")

    def test_refunding_whole_principal_ends_refunded(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()
        settlement_service.refund(contract_id, Decimal("50000"), "damaged", "refund-1")

        result = settlement_service.refund(contract_id, Decimal("150000"), "returned", "refund-2")

        assert result.state == ContractState.REFUNDED
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("0")

    def test_refund_beyond_principal_rejected(self, funded_contract, settlement_service):
        contract_id = funded_contract()

        with pytest.raises(ValidationError, match="refundable"):
            settlement_service.refund(contract_id, Decimal("200001"), "too much", "refund-1")

    def test_refund_of_disputed_hold_comes_from_escrow(self, session, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")
        settlement_service.open_dispute(contract_id, "customer complaint")

        result = settlement_service.refund(contract_id, Decimal("200000"), "dispute upheld", "refund-1")

        assert result.state == ContractState.REFUNDED
        assert _balances(session, contract_id)["ESCROW"] == Decimal("0")

    def test_refund_before_hold_is_illegal(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()

        with pytest.raises(IllegalTransitionError):
            settlement_service.refund(contract_id, Decimal("200000"), "n/a", "refund-1")

    def test_non_positive_refund_rejected(self, funded_contract, settlement_service):
        contract_id = funded_contract()

        with pytest.raises(ValidationError):
            settlement_service.refund(contract_id, Decimal("0"), "n/a", "refund-1")

    def test_failed_refund_is_retried_with_amount(self, session, funded_contract, settlement_service, escrow):
        contract_id = funded_contract()
        escrow.fail_next("refund")

        result = settlement_service.refund(contract_id, Decimal("50000"), "damaged", "refund-1")

        assert result.status == SettlementStatus.PENDING_RETRY
        (event,) = _events(session, contract_id, RETRY_EVENT)
        assert event.payload["operation"] == "refund"
        assert Decimal(event.payload["amount"]) == Decimal("50000")

        retried = settlement_service.retry(event.payload)
        assert retried.state == ContractState.DISPUTED


class TestPayrollRemittance:

    def test_first_installment_paid(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        result = _remit(settlement_service, seed, (contract_id, "67333"))

        (line,) = result.lines
        assert result.processed == 1 and result.failed == 0
        assert line.success is True
        assert line.installments_paid == 1
        assert line.state == ContractState.IN_REPAYMENT
        contract = session.get(Contract, contract_id)
        assert contract.installments[0].status == InstallmentStatus.PAID
        assert contract.total_due == Decimal("134667")

    def test_paying_last_installment_closes_contract(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()
        _remit(settlement_service, seed, (contract_id, "134666"))

        result = _remit(settlement_service, seed, (contract_id, "67334"))

        assert result.lines[0].state == ContractState.CLOSED
        contract = session.get(Contract, contract_id)
        assert contract.closed_at is not None
        assert contract.outstanding == Decimal("0")
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("0")

    def test_partial_payment_marks_installment_deducted(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        _remit(settlement_service, seed, (contract_id, "10000"))

        installment = session.get(Contract, contract_id).installments[0]
        assert installment.status == InstallmentStatus.DEDUCTED
        assert installment.outstanding == Decimal("57333")

    def test_overpayment_is_reported_unapplied(self, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        (line,) = _remit(settlement_service, seed, (contract_id, "250000")).lines

        assert Decimal(line.applied) == Decimal("202000")
        assert Decimal(line.unapplied) == Decimal("48000")
        assert line.state == ContractState.CLOSED

    def test_repayment_posts_ledger_and_event(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        _remit(settlement_service, seed, (contract_id, "67333"))

        assert _balances(session, contract_id)["EMPLOYER_PAYROLL"] == Decimal("-67333")
        assert len(_events(session, contract_id, REPAYMENT_EVENT)) == 1

    def test_paid_instruction_is_executed(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        _remit(settlement_service, seed, (contract_id, "67333"))

        statuses = session.execute(
            select(DeductionInstruction.payroll_cycle, DeductionInstruction.status)
            .where(DeductionInstruction.contract_id == contract_id)
        ).all()
        assert ("2024-01", DeductionStatus.EXECUTED.value) in statuses

    def test_partial_payment_leaves_instruction_open(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        _remit(settlement_service, seed, (contract_id, "10000"))

        statuses = dict(session.execute(
            select(DeductionInstruction.installment_id, DeductionInstruction.status)
            .where(DeductionInstruction.contract_id == contract_id)
        ).all())
        first = session.get(Contract, contract_id).installments[0]
        assert statuses[first.id] == DeductionStatus.PENDING_PAYROLL.value

        _remit(settlement_service, seed, (contract_id, "57333"))

        instruction = session.execute(
            select(DeductionInstruction).where(DeductionInstruction.installment_id == first.id)
        ).scalar_one()
        assert instruction.status == DeductionStatus.EXECUTED.value

    def test_closing_leaves_no_failed_instructions(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        _remit(settlement_service, seed, (contract_id, "202000"))

        statuses = session.execute(
            select(DeductionInstruction.status).where(DeductionInstruction.contract_id == contract_id)
        ).scalars().all()
        assert set(statuses) == {DeductionStatus.EXECUTED.value}

    def test_failing_line_does_not_block_others(self, session, funded_contract, authorized_contract,
                                                settlement_service, seed):
        good = funded_contract()
        not_repaying = authorized_contract(phone=SECOND_EMPLOYEE_PHONE)

        result = _remit(
            settlement_service, seed,
            (not_repaying, "50000"), (uuid4(), "1000"), (good, "67333"),
        )

        assert result.processed == 1
        assert result.failed == 2
        assert [l.error_code for l in result.lines] == [
            "VALIDATION_ERROR", "CONTRACT_NOT_FOUND", None,
        ]
        assert session.get(Contract, good).total_paid == Decimal("67333")

    def test_line_for_other_employer_fails(self, session, funded_contract, settlement_service):
        contract_id = funded_contract()
        other = Employer(name="Other Employer Ltd", is_active=True)
        session.add(other)
        session.flush()

        result = settlement_service.post_payroll_remittance(
            Remittance(other.id, "2024-01", "PAY-X", (RemittanceLine(contract_id, Decimal("67333")),)),
            "rem-other",
        )

        assert result.lines[0].success is False
        assert "not payable by employer" in result.lines[0].error

    def test_remittance_replay(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()
        remittance = Remittance(
            seed.employer.id, "2024-01", "PAY-1", (RemittanceLine(contract_id, Decimal("67333")),),
        )
        first = settlement_service.post_payroll_remittance(remittance, "rem-1")

        second = settlement_service.post_payroll_remittance(remittance, "rem-1")

        assert second.replayed is True
        assert second.remittance_id == first.remittance_id
        assert session.get(Contract, contract_id).total_paid == Decimal("67333")
        assert len(session.execute(select(PayrollRemittance)).scalars().all()) == 1

    def test_remittance_record_totals(self, session, funded_contract, settlement_service, seed):
        contract_id = funded_contract()

        result = _remit(settlement_service, seed, (contract_id, "67333"), (uuid4(), "500"))

        record = session.get(PayrollRemittance, UUID(result.remittance_id))
        assert record.total_amount == Decimal("67833")
        assert record.applied_amount == Decimal("67333")
        assert (record.line_count, record.failed_count) == (2, 1)


class TestDisputesDefaultsCancellation:

    def test_dispute_and_reinstate(self, funded_contract, settlement_service):
        contract_id = funded_contract()

        assert settlement_service.open_dispute(contract_id, "wrong item").state == ContractState.DISPUTED
        resolved = settlement_service.resolve_dispute(contract_id, "replacement shipped", reinstate=True)

        assert resolved.state == ContractState.IN_REPAYMENT

    def test_dispute_resolved_without_reinstatement_cancels(self, session, funded_contract,
                                                            settlement_service, seed):
        contract_id = funded_contract()
        settlement_service.open_dispute(contract_id, "fraud")

        resolved = settlement_service.resolve_dispute(contract_id, "confirmed fraud", reinstate=False)

        assert resolved.state == ContractState.CANCELLED
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("0")

    def test_dispute_before_escrow_is_illegal(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()

        with pytest.raises(IllegalTransitionError):
            settlement_service.open_dispute(contract_id, "too early")

    def test_default_keeps_capital_deployed(self, session, funded_contract, settlement_service,
                                            seed, captured_logs):
        contract_id = funded_contract()

        contract = settlement_service.mark_defaulted(contract_id, "employee left employer")

        assert contract.state == ContractState.DEFAULTED
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("200000")
        assert any(r["message"] == "contract_defaulted" for r in captured_logs())

    def test_cancel_before_hold_releases_capital(self, session, authorized_contract, settlement_service, seed):
        contract_id = authorized_contract()

        contract = settlement_service.cancel(contract_id, "customer changed mind", TEST_ACTOR_ID)

        assert contract.state == ContractState.CANCELLED
        assert _utilized(session, seed.aggressive_lender.id) == Decimal("0")

    def test_cancel_after_hold_is_illegal(self, authorized_contract, settlement_service):
        contract_id = authorized_contract()
        settlement_service.hold_funds(contract_id, "hold-1")

        with pytest.raises(IllegalTransitionError):
            settlement_service.cancel(contract_id, "too late")

    def test_closed_contract_cannot_be_disputed(self, funded_contract, settlement_service, seed):
        contract_id = funded_contract()
        _remit(settlement_service, seed, (contract_id, "202000"))

        with pytest.raises(IllegalTransitionError):
            settlement_service.open_dispute(contract_id, "after the fact")
