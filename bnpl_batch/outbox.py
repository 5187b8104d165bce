"""
OutboxDispatcher -- delivers async side effects with retry and escalation.

Contract:
    ``run_once()`` claims PENDING events whose ``next_attempt_at`` has
    passed, runs the handler registered for each event type (falling back to
    ``EventBus.publish``), and records the outcome on the event row.

Architecture: bnpl_batch.  Handlers call into bnpl_services; the dispatcher
    itself only knows event types and payloads.

Invariants enforced:
    - Each handler runs inside a SAVEPOINT: a failing handler leaves no
      partial writes, and its event is rescheduled.
    - Backoff: ``next_attempt_at = now + min(base * 2**attempts, cap)``,
      where ``attempts`` counts the failures before this one.
    - After ``max_attempts`` failures the event is ESCALATED and a CRITICAL
      ``outbox_event_escalated`` record is logged.  ESCALATED events are
      never picked up again.
    - The caller owns the transaction (commit after ``run_once``).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, OutboxPolicy, get_active_policy
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.exceptions import BnplError
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.outbox import OutboxEvent, OutboxStatus
from bnpl_services.gateways import EscrowGateway, EventBus, LoanLedgerGateway
from bnpl_services.loan_booking_service import LoanBookingService
from bnpl_services.settlement_service import (
    LOAN_BOOKING_EVENT,
    REPAYMENT_EVENT,
    RETRY_EVENT,
    SettlementService,
)

logger = get_logger("batch.outbox")

OutboxHandler = Callable[[Session, dict[str, Any]], Any]


def backoff_seconds(attempts: int, base_seconds: int, max_seconds: int) -> int:
    """Delay before the next attempt after ``attempts`` earlier failures."""
    return min(base_seconds * 2 ** attempts, max_seconds)


@dataclass(frozen=True)
class DispatchReport:
    claimed: int = 0
    dispatched: int = 0
    rescheduled: int = 0
    escalated: int = 0


def build_handlers(
    escrow: EscrowGateway,
    ledger: LoanLedgerGateway,
    policy: BnplPolicy | None = None,
    clock: Clock | None = None,
) -> dict[str, OutboxHandler]:
    """Handlers for the events the settlement flow enqueues."""

    def retry_settlement(session: Session, payload: dict[str, Any]) -> Any:
        return SettlementService(session, escrow, policy=policy, clock=clock).retry(payload)

    def book_loan(session: Session, payload: dict[str, Any]) -> Any:
        return LoanBookingService(session, ledger).book(payload)

    def forward_repayment(session: Session, payload: dict[str, Any]) -> Any:
        return LoanBookingService(session, ledger).forward_repayment(payload)

    return {
        RETRY_EVENT: retry_settlement,
        LOAN_BOOKING_EVENT: book_loan,
        REPAYMENT_EVENT: forward_repayment,
    }


class OutboxDispatcher:
    """
    Contract:
        One ``run_once`` processes at most ``batch_size`` due events, oldest
        first.

    Non-goals:
        - Does NOT lock rows across processes; run one dispatcher per
          database, as the scheduler does.
    """

    def __init__(
        self,
        session: Session,
        handlers: Mapping[str, OutboxHandler],
        event_bus: EventBus | None = None,
        policy: OutboxPolicy | None = None,
        clock: Clock | None = None,
    ):
        self.session = session
        self._handlers = dict(handlers)
        self._event_bus = event_bus
        self._policy = policy or get_active_policy().outbox
        self._clock = clock or SystemClock()

    def due_events(self) -> list[OutboxEvent]:
        return list(self.session.execute(
            select(OutboxEvent)
            .where(
                OutboxEvent.status == OutboxStatus.PENDING.value,
                OutboxEvent.next_attempt_at <= self._clock.now(),
            )
            .order_by(OutboxEvent.next_attempt_at, OutboxEvent.created_at)
            .limit(self._policy.batch_size)
        ).scalars().all())

    def run_once(self) -> DispatchReport:
        events = self.due_events()
        dispatched = rescheduled = escalated = 0

        for event in events:
            with LogContext.bind(correlation_id=str(event.id)):
                try:
                    with self.session.begin_nested():
                        self._deliver(event)
                except Exception as exc:
                    if self._record_failure(event, exc):
                        escalated += 1
                    else:
                        rescheduled += 1
                else:
                    event.status = OutboxStatus.DISPATCHED.value
                    event.dispatched_at = self._clock.now()
                    event.last_error = None
                    dispatched += 1
                    logger.info("outbox_event_dispatched", extra={
                        "event_type": event.event_type,
                        "aggregate_id": event.aggregate_id,
                        "attempts": event.attempts + 1,
                    })
            self.session.flush()

        report = DispatchReport(len(events), dispatched, rescheduled, escalated)
        if events:
            logger.info("outbox_run_completed", extra={
                "claimed": report.claimed,
                "dispatched": report.dispatched,
                "rescheduled": report.rescheduled,
                "escalated": report.escalated,
            })
        return report

    def _deliver(self, event: OutboxEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is not None:
            handler(self.session, dict(event.payload))
            return
        if self._event_bus is None:
            raise LookupError(f"No handler registered for {event.event_type}")
        self._event_bus.publish({
            "event_id": str(event.id),
            "event_type": event.event_type,
            "aggregate_id": event.aggregate_id,
            "payload": dict(event.payload),
        })

    def _record_failure(self, event: OutboxEvent, exc: Exception) -> bool:
        """Reschedule or escalate; True if escalated."""
        previous_attempts = event.attempts
        event.attempts = previous_attempts + 1
        event.last_error = f"{type(exc).__name__}: {exc}"[:1000]
        code = exc.code if isinstance(exc, BnplError) else type(exc).__name__

        if event.attempts >= self._policy.max_attempts:
            event.status = OutboxStatus.ESCALATED.value
            logger.critical("outbox_event_escalated", extra={
                "event_type": event.event_type,
                "aggregate_id": event.aggregate_id,
                "attempts": event.attempts,
                "error_code": code,
                "last_error": event.last_error,
            })
            return True

        delay = backoff_seconds(
            previous_attempts,
            self._policy.backoff_base_seconds,
            self._policy.max_backoff_seconds,
        )
        event.next_attempt_at = self._clock.now() + timedelta(seconds=delay)
        logger.warning("outbox_event_rescheduled", extra={
            "event_type": event.event_type,
            "aggregate_id": event.aggregate_id,
            "attempts": event.attempts,
            "delay_seconds": delay,
            "error_code": code,
        })
        return False
