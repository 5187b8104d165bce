"""
bnpl_services.reconciliation_service -- Internal vs external balance checks.

Responsibility:
    Gathers expected amounts from internal records and actual amounts from
    each external channel, classifies the difference with the variance
    classifier, and persists one ReconciliationRecord per result.

        PAYROLL        expected: deduction instructions of (employer, cycle)
                       actual:   remittances received for (employer, cycle)
        LENDER_LEDGER  expected: internal outstanding of booked open loans
                       actual:   outstanding reported by the loan ledger
        ESCROW         expected: successful releases settled on the day
                       actual:   the escrow provider's settled total

Architecture position:
    Services -- read-mostly orchestration over engines + kernel.
    Composes classify_variance (pure engine) with the LoanLedgerGateway and
    EscrowGateway collaborators.

Invariants enforced:
    - Every run writes new records; prior records are never updated except
      for their resolution fields (db/immutability.py).
    - Reconciliation never raises on a gateway failure.  The error is kept
      in ``details["errors"]`` and the unreachable amount counts as zero.
    - No row locks are taken on contracts.

Failure modes:
    - ValidationError: malformed period key.
    - ContractNotFoundError / PartyNotFoundError: unknown scope.

Audit relevance:
    Records carry the run id, the channel tolerance applied and a details
    breakdown, so an auditor can re-derive each classification.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_config.bridges import build_channel_tolerances
from bnpl_engines.reconciliation import EXACT, ChannelTolerance, classify_variance
from bnpl_engines.schedule import payroll_cycle_for
from bnpl_kernel.domain.amounts import ZERO
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.domain.lifecycle import CAPITAL_RELEASING_STATES
from bnpl_kernel.exceptions import ExternalGatewayError, NotFoundError, ValidationError
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.contract import Contract
from bnpl_kernel.models.party import Employer
from bnpl_kernel.models.reconciliation import (
    ReconciliationChannel,
    ReconciliationRecord,
    ReconciliationRecordStatus,
)
from bnpl_kernel.models.settlement import (
    DeductionInstruction,
    DeductionStatus,
    EscrowTransaction,
    EscrowTransactionKind,
    EscrowTransactionStatus,
    PayrollRemittance,
)
from bnpl_kernel.repositories import ContractRepository, EmployerRepository
from bnpl_kernel.services.base import BaseService
from bnpl_services.gateways import EscrowGateway, LoanLedgerGateway
from bnpl_services.payroll_service import validate_cycle

logger = get_logger("services.reconciliation")

WHOLE_CHANNEL = "*"


@dataclass(frozen=True)
class ChannelSummary:
    count: int = 0
    expected_total: Decimal = ZERO
    actual_total: Decimal = ZERO
    variance_total: Decimal = ZERO


@dataclass(frozen=True)
class ReconciliationSummary:
    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    by_channel: dict[str, ChannelSummary] = field(default_factory=dict)

    @property
    def unresolved_exceptions(self) -> int:
        return self.total - self.by_status.get(ReconciliationRecordStatus.MATCHED.value, 0)


def validate_day(day_key: str) -> str:
    try:
        date.fromisoformat(day_key)
    except ValueError:
        raise ValidationError(f"Period must be YYYY-MM-DD, got {day_key!r}", field="period_key") from None
    return day_key


class ReconciliationService(BaseService):
    """
    Runs channel reconciliations and manages their records.

    Contract:
        Each ``reconcile_*`` call returns the record it flushed.  The caller
        owns the transaction.

    Non-goals:
        - Does NOT correct balances.  A VARIANCE is a fact for operations
          to resolve through ``attach_resolution``.
    """

    def __init__(
        self,
        session: Session,
        ledger: LoanLedgerGateway,
        escrow: EscrowGateway,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._ledger = ledger
        self._escrow = escrow
        self._clock = clock or SystemClock()
        self._tolerances = build_channel_tolerances(policy or get_active_policy())
        self._contracts = ContractRepository(session)
        self._employers = EmployerRepository(session)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def reconcile_payroll(
        self,
        employer_id: UUID,
        cycle: str,
        run_id: UUID | None = None,
    ) -> ReconciliationRecord:
        validate_cycle(cycle)
        self._employers.require(employer_id)

        instructions = self.session.execute(
            select(DeductionInstruction).where(
                DeductionInstruction.employer_id == employer_id,
                DeductionInstruction.payroll_cycle == cycle,
                DeductionInstruction.status != DeductionStatus.FAILED.value,
            )
        ).scalars().all()
        remittances = self.session.execute(
            select(PayrollRemittance)
            .where(
                PayrollRemittance.employer_id == employer_id,
                PayrollRemittance.payroll_cycle == cycle,
            )
            .order_by(PayrollRemittance.received_at)
        ).scalars().all()

        expected = sum((i.monthly_amount for i in instructions), ZERO)
        actual = sum((r.total_amount for r in remittances), ZERO)
        details = {
            "instructions": len(instructions),
            "remittances": [r.reference for r in remittances],
        }
        return self._record(
            ReconciliationChannel.PAYROLL, cycle, str(employer_id),
            expected, actual, details, run_id,
        )

    def reconcile_ledger(
        self,
        day_key: str | None = None,
        run_id: UUID | None = None,
    ) -> ReconciliationRecord:
        day_key = validate_day(day_key or self._clock.today().isoformat())
        contracts = self.session.execute(
            select(Contract)
            .where(
                Contract.external_loan_id.is_not(None),
                Contract.state.not_in([s.value for s in CAPITAL_RELEASING_STATES]),
            )
            .order_by(Contract.opened_at)
        ).scalars().all()

        expected = ZERO
        actual = ZERO
        errors: list[dict[str, str]] = []
        for contract in contracts:
            expected += contract.outstanding
            try:
                actual += self._ledger.get_status(contract.external_loan_id).outstanding
            except ExternalGatewayError as exc:
                errors.append({"contract_id": str(contract.id), "error": str(exc)})

        details: dict[str, Any] = {"contracts": len(contracts)}
        if errors:
            details["errors"] = errors
        return self._record(
            ReconciliationChannel.LENDER_LEDGER, day_key, WHOLE_CHANNEL,
            expected, actual, details, run_id,
        )

    def reconcile_escrow(
        self,
        day_key: str | None = None,
        run_id: UUID | None = None,
    ) -> ReconciliationRecord:
        day_key = validate_day(day_key or self._clock.today().isoformat())
        releases = self.session.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.kind == EscrowTransactionKind.RELEASE.value,
                EscrowTransaction.status == EscrowTransactionStatus.SUCCESS.value,
                EscrowTransaction.settlement_date == date.fromisoformat(day_key),
            )
        ).scalars().all()
        expected = sum((t.amount for t in releases), ZERO)

        details: dict[str, Any] = {"releases": len(releases)}
        try:
            actual = self._escrow.settled_total(day_key)
        except ExternalGatewayError as exc:
            actual = ZERO
            details["errors"] = [{"error": str(exc)}]
        return self._record(
            ReconciliationChannel.ESCROW, day_key, WHOLE_CHANNEL,
            expected, actual, details, run_id,
        )

    def reconcile_contract(self, contract_id: UUID) -> ReconciliationRecord:
        """Ad hoc check of one contract against the lender ledger."""
        contract = self._contracts.require(contract_id)
        details: dict[str, Any] = {
            "state": contract.state,
            "external_loan_id": contract.external_loan_id,
        }
        actual = ZERO
        if contract.external_loan_id is None:
            details["errors"] = [{"error": "loan not booked"}]
        else:
            try:
                actual = self._ledger.get_status(contract.external_loan_id).outstanding
            except ExternalGatewayError as exc:
                details["errors"] = [{"error": str(exc)}]
        return self._record(
            ReconciliationChannel.LENDER_LEDGER, self._clock.today().isoformat(),
            str(contract.id), contract.outstanding, actual, details, None,
        )

    def run_daily(self, as_of: date | None = None) -> list[ReconciliationRecord]:
        """Ledger and escrow for the day, payroll per active employer for its cycle."""
        as_of = as_of or self._clock.today()
        run_id = uuid4()
        with LogContext.bind(run_id=run_id):
            records = [
                self.reconcile_ledger(as_of.isoformat(), run_id),
                self.reconcile_escrow(as_of.isoformat(), run_id),
            ]
            cycle = payroll_cycle_for(as_of)
            employers = self.session.execute(
                select(Employer).where(Employer.is_active.is_(True)).order_by(Employer.name)
            ).scalars().all()
            for employer in employers:
                records.append(self.reconcile_payroll(employer.id, cycle, run_id))

            logger.info("reconciliation_run_completed", extra={
                "records": len(records),
                "exceptions": sum(
                    1 for r in records if r.status != ReconciliationRecordStatus.MATCHED
                ),
            })
            return records

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def list_records(
        self,
        channel: ReconciliationChannel | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Sequence[ReconciliationRecord]:
        """Newest first."""
        stmt = select(ReconciliationRecord)
        if channel is not None:
            stmt = stmt.where(ReconciliationRecord.channel == channel.value)
        if start is not None:
            stmt = stmt.where(ReconciliationRecord.reconciled_at >= start)
        if end is not None:
            stmt = stmt.where(ReconciliationRecord.reconciled_at <= end)
        return self.session.execute(
            stmt.order_by(ReconciliationRecord.reconciled_at.desc())
        ).scalars().all()

    def summary(self) -> ReconciliationSummary:
        rows = self.session.execute(
            select(
                ReconciliationRecord.channel,
                ReconciliationRecord.status,
                func.count(ReconciliationRecord.id),
                func.coalesce(func.sum(ReconciliationRecord.expected_amount), 0),
                func.coalesce(func.sum(ReconciliationRecord.actual_amount), 0),
                func.coalesce(func.sum(ReconciliationRecord.variance), 0),
            ).group_by(ReconciliationRecord.channel, ReconciliationRecord.status)
        ).all()

        by_status: dict[str, int] = {}
        by_channel: dict[str, ChannelSummary] = {}
        total = 0
        for channel, status, count, expected, actual, variance in rows:
            total += count
            by_status[status] = by_status.get(status, 0) + count
            prior = by_channel.get(channel, ChannelSummary())
            by_channel[channel] = ChannelSummary(
                count=prior.count + count,
                expected_total=prior.expected_total + Decimal(str(expected)),
                actual_total=prior.actual_total + Decimal(str(actual)),
                variance_total=prior.variance_total + Decimal(str(variance)),
            )
        return ReconciliationSummary(total=total, by_status=by_status, by_channel=by_channel)

    def attach_resolution(
        self,
        record_id: UUID,
        note: str,
        actor_id: UUID | None = None,
    ) -> ReconciliationRecord:
        if not note or not note.strip():
            raise ValidationError("Resolution note is required", field="note")
        record = self.session.get(ReconciliationRecord, record_id)
        if record is None:
            raise NotFoundError(f"Reconciliation record not found: {record_id}")
        record.resolution_note = note.strip()
        record.resolved_by_id = actor_id
        record.resolved_at = self._clock.now()
        self.session.flush()
        logger.info("reconciliation_resolved", extra={
            "record_id": str(record.id), "status": record.status,
        })
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tolerance(self, channel: ReconciliationChannel) -> ChannelTolerance:
        return self._tolerances.get(channel.value, EXACT)

    def _record(
        self,
        channel: ReconciliationChannel,
        period_key: str,
        scope_ref: str,
        expected: Decimal,
        actual: Decimal,
        details: dict[str, Any],
        run_id: UUID | None,
    ) -> ReconciliationRecord:
        result = classify_variance(
            expected=expected, actual=actual, tolerance=self._tolerance(channel),
        )
        record = ReconciliationRecord(
            run_id=run_id or uuid4(),
            channel=channel.value,
            period_key=period_key,
            scope_ref=scope_ref,
            expected_amount=result.expected,
            actual_amount=result.actual,
            variance=result.variance,
            tolerance=result.tolerance_applied,
            status=result.status.value,
            details=details,
            reconciled_at=self._clock.now(),
        )
        self.session.add(record)
        self.session.flush()

        log = logger.info if result.is_matched else logger.warning
        log("reconciliation_recorded", extra={
            "channel": channel.value,
            "period_key": period_key,
            "scope_ref": scope_ref,
            "status": result.status.value,
            "expected": str(expected),
            "actual": str(actual),
            "variance": str(result.variance),
        })
        return record
