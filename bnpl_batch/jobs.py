"""
Background jobs run by the scheduler.

Each job takes the session of its own transaction and returns a small
result for logging.  Jobs never commit; the scheduler does.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.models.reconciliation import ReconciliationRecordStatus
from bnpl_services.gateways import EscrowGateway, EventBus, LoanLedgerGateway
from bnpl_services.payroll_service import PayrollService
from bnpl_services.reconciliation_service import ReconciliationService

from bnpl_batch.outbox import DispatchReport, OutboxDispatcher, build_handlers

logger = get_logger("batch.jobs")


@dataclass(frozen=True)
class ReconciliationRunReport:
    records: int
    matched: int
    exceptions: int


class BnplJobs:
    """
    The three recurring jobs, bound to one set of collaborators.

    Contract:
        ``dispatch_outbox``, ``reconcile_daily`` and ``flag_overdue`` each
        take a Session and leave the commit to the caller.
    """

    def __init__(
        self,
        escrow: EscrowGateway,
        ledger: LoanLedgerGateway,
        event_bus: EventBus | None = None,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        self._escrow = escrow
        self._ledger = ledger
        self._event_bus = event_bus
        self._policy = policy or get_active_policy()
        self._clock = clock or SystemClock()
        self._handlers = build_handlers(escrow, ledger, self._policy, self._clock)

    def dispatch_outbox(self, session: Session) -> DispatchReport:
        return OutboxDispatcher(
            session,
            self._handlers,
            event_bus=self._event_bus,
            policy=self._policy.outbox,
            clock=self._clock,
        ).run_once()

    def reconcile_daily(self, session: Session) -> ReconciliationRunReport:
        records = ReconciliationService(
            session, self._ledger, self._escrow, policy=self._policy, clock=self._clock,
        ).run_daily()
        matched = sum(1 for r in records if r.status == ReconciliationRecordStatus.MATCHED)
        return ReconciliationRunReport(len(records), matched, len(records) - matched)

    def flag_overdue(self, session: Session) -> int:
        return PayrollService(session, policy=self._policy, clock=self._clock).mark_overdue()
