"""
bnpl_services.settlement_service -- Escrow and settlement orchestrator.

Responsibility:
    Moves money exactly once per logical operation and keeps each
    contract's lifecycle state consistent with externally confirmed facts:
    escrow hold, release to the merchant, refunds, payroll remittances,
    disputes, defaults and cancellations.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Calls the EscrowGateway, drives the contract through
    ``bnpl_kernel.domain.lifecycle.transition`` and writes ledger entries,
    escrow transactions, deduction instructions and outbox events.

Invariants enforced:
    - A transition is applied only after the gateway confirmed the effect.
    - The ledger entries of one economic event share an ``event_key`` and
      net to zero across accounts.
    - Each mutating call is idempotent per caller key: a successful result
      is cached and replayed; failed or pending results are not cached.
    - A contract is mutated under a row lock and a version counter; a stale
      concurrent writer fails with OptimisticLockError.
    - Lender capital is released when a contract reaches CLOSED, CANCELLED
      or REFUNDED.
    - A contract in a terminal state has no open deduction instructions;
      unexecuted ones are marked FAILED so payroll stops deducting.

Failure modes:
    - Gateway failure on hold/release/refund: the escrow transaction is
      FAILED, the contract is flagged PENDING_EXTERNAL, a
      ``settlement.retry`` outbox event is enqueued and the result status is
      PENDING_RETRY.  Nothing is raised to the caller.
    - IllegalTransitionError: the contract is not in a state the operation
      accepts (duplicate webhook, out-of-order call).
    - ValidationError: bad amount.
    - Remittance lines fail individually; the batch continues.

Audit relevance:
    Every escrow call is persisted as an EscrowTransaction; every money
    movement as append-only LedgerEntry rows; every state change as a
    ContractTransition.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_engines.schedule import payroll_cycle_for
from bnpl_kernel.domain.amounts import ZERO, floor_amount, to_decimal
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.domain.lifecycle import (
    CAPITAL_RELEASING_STATES,
    TERMINAL_STATES,
    ContractState,
    can_transition,
    transition,
)
from bnpl_kernel.exceptions import (
    BnplError,
    ExternalGatewayError,
    IllegalTransitionError,
    OptimisticLockError,
    ValidationError,
)
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.contract import (
    Contract,
    ExternalStatus,
    InstallmentStatus,
    LedgerBookingStatus,
    UNPAID_INSTALLMENT_STATUSES,
)
from bnpl_kernel.models.settlement import (
    DeductionInstruction,
    DeductionStatus,
    EscrowTransaction,
    EscrowTransactionKind,
    EscrowTransactionStatus,
    LedgerAccount,
    LedgerEntry,
    LedgerEntryType,
    PayrollRemittance,
)
from bnpl_kernel.repositories import ContractRepository, EmployerRepository
from bnpl_kernel.services.base import BaseService
from bnpl_kernel.services.capital_service import LenderCapitalService
from bnpl_kernel.services.idempotency_service import IdempotencyService
from bnpl_kernel.services.outbox_service import OutboxService
from bnpl_services.gateways import EscrowGateway, GatewayResult, GatewayStatus

logger = get_logger("services.settlement")

RETRY_EVENT = "settlement.retry"
LOAN_BOOKING_EVENT = "loan.booking_requested"
REPAYMENT_EVENT = "loan.repayment_posted"

_REFUNDABLE_AFTER_RELEASE = frozenset({
    ContractState.DISBURSED,
    ContractState.IN_REPAYMENT,
    ContractState.DISPUTED,
})

_OPEN_DEDUCTION_STATUSES = (
    DeductionStatus.PENDING_PAYROLL.value,
    DeductionStatus.SENT.value,
)


class SettlementStatus(str, Enum):
    COMPLETED = "COMPLETED"
    PENDING_RETRY = "PENDING_RETRY"


@dataclass(frozen=True)
class SettlementResult:
    contract_id: str
    operation: str
    status: SettlementStatus
    state: str
    amount: str
    escrow_transaction_id: str | None = None
    gateway_transaction_id: str | None = None
    detail: str = ""
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("replayed")
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], replayed: bool = False) -> "SettlementResult":
        values = dict(data)
        values["status"] = SettlementStatus(values["status"])
        return cls(**values, replayed=replayed)


@dataclass(frozen=True)
class RemittanceLine:
    contract_id: UUID
    amount: Decimal
    reference: str = ""


@dataclass(frozen=True)
class Remittance:
    employer_id: UUID
    payroll_cycle: str
    reference: str
    lines: tuple[RemittanceLine, ...]

    @property
    def total_amount(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)

    def fingerprint(self) -> dict[str, Any]:
        return {
            "employer_id": str(self.employer_id),
            "payroll_cycle": self.payroll_cycle,
            "reference": self.reference,
            "lines": [[str(l.contract_id), str(l.amount), l.reference] for l in self.lines],
        }


@dataclass(frozen=True)
class LineResult:
    contract_id: str
    success: bool
    applied: str = "0"
    unapplied: str = "0"
    state: str | None = None
    installments_paid: int = 0
    error_code: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RemittanceResult:
    remittance_id: str
    employer_id: str
    payroll_cycle: str
    total_amount: str
    applied_amount: str
    processed: int
    failed: int
    lines: tuple[LineResult, ...] = field(default_factory=tuple)
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("replayed")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], replayed: bool = False) -> "RemittanceResult":
        values = dict(data)
        values["lines"] = tuple(LineResult(**line) for line in values["lines"])
        return cls(**values, replayed=replayed)


class SettlementService(BaseService):
    """
    Escrow/settlement orchestrator.

    Contract:
        Each public mutating method validates the contract's state before
        calling any gateway, and transitions only after success.
    Guarantees:
        - Gateway failures never propagate for hold/release/refund; they
          become PENDING_RETRY results plus a retry outbox event.
        - Ledger events balance.
    Non-goals:
        - Loan-ledger booking (LoanBookingService, via the outbox).
        - Commit/rollback (caller-owned).
    """

    def __init__(
        self,
        session: Session,
        escrow: EscrowGateway,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._escrow = escrow
        self._policy = policy or get_active_policy()
        self._clock = clock or SystemClock()
        self._contracts = ContractRepository(session)
        self._employers = EmployerRepository(session)
        self._capital = LenderCapitalService(session)
        self._outbox = OutboxService(session, self._clock)
        self._idempotency = IdempotencyService(
            session,
            self._clock,
            default_ttl=timedelta(hours=self._policy.settlement.idempotency_ttl_hours),
        )

    # ------------------------------------------------------------------
    # Escrow hold
    # ------------------------------------------------------------------

    def hold_funds(
        self,
        contract_id: UUID,
        idempotency_key: str,
        amount: Decimal | None = None,
        actor_id: UUID | None = None,
    ) -> SettlementResult:
        """Place the escrow hold for a customer-authorized contract."""
        request = {"contract_id": str(contract_id), "amount": str(amount) if amount else None}
        return self._idempotent(
            "settlement.hold", idempotency_key, request, contract_id, actor_id,
            lambda contract: self._hold(contract, amount, actor_id, retrying=False),
        )

    def _hold(
        self,
        contract: Contract,
        amount: Decimal | None,
        actor_id: UUID | None,
        retrying: bool,
    ) -> SettlementResult:
        self._require_transition(contract, ContractState.ESCROW_HELD)
        if amount is not None and to_decimal(amount) != contract.principal:
            raise ValidationError(
                f"Hold amount {amount} must equal principal {contract.principal}",
                field="amount",
            )
        principal = contract.principal
        txn, result = self._call_escrow(contract, EscrowTransactionKind.HOLD, principal)
        if not result.ok:
            return self._gateway_failed(contract, "hold", txn, result, {}, retrying)

        self._post_ledger(contract, f"hold:{txn.id}", txn.reference, [
            (LedgerEntryType.DISBURSEMENT, LedgerAccount.LENDER, -principal),
            (LedgerEntryType.DISBURSEMENT, LedgerAccount.ESCROW, principal),
        ])
        self._enter(contract, ContractState.ESCROW_HELD, "Escrow hold confirmed", actor_id)
        contract.external_status = ExternalStatus.CONFIRMED.value
        self._flush(contract)
        logger.info("escrow_hold_confirmed", extra={
            "contract_id": str(contract.id), "amount": str(principal),
        })
        return self._result(contract, "hold", txn, result, principal)

    # ------------------------------------------------------------------
    # Release to merchant
    # ------------------------------------------------------------------

    def release_funds(
        self,
        contract_id: UUID,
        idempotency_key: str,
        actor_id: UUID | None = None,
    ) -> SettlementResult:
        """Settle the merchant and start repayment."""
        request = {"contract_id": str(contract_id)}
        return self._idempotent(
            "settlement.release", idempotency_key, request, contract_id, actor_id,
            lambda contract: self._release(contract, actor_id, retrying=False),
        )

    def confirm_delivery(
        self,
        contract_id: UUID,
        idempotency_key: str,
        actor_id: UUID | None = None,
    ) -> SettlementResult:
        """Merchant delivery confirmation; releases escrow to the merchant."""
        logger.info("delivery_confirmed", extra={"contract_id": str(contract_id)})
        return self.release_funds(contract_id, idempotency_key, actor_id)

    def platform_share(self, contract: Contract) -> Decimal:
        return floor_amount(contract.processing_fee * self._policy.settlement.platform_fee_share)

    def _release(
        self,
        contract: Contract,
        actor_id: UUID | None,
        retrying: bool,
    ) -> SettlementResult:
        self._require_transition(contract, ContractState.DISBURSED)
        principal = contract.principal
        share = self.platform_share(contract)
        payout = principal - share

        txn, result = self._call_escrow(contract, EscrowTransactionKind.RELEASE, payout)
        if not result.ok:
            return self._gateway_failed(contract, "release", txn, result, {}, retrying)

        self._post_ledger(contract, f"release:{txn.id}", txn.reference, [
            (LedgerEntryType.DISBURSEMENT, LedgerAccount.ESCROW, -principal),
            (LedgerEntryType.DISBURSEMENT, LedgerAccount.MERCHANT, payout),
            (LedgerEntryType.FEE, LedgerAccount.PLATFORM, share),
        ])
        self._enter(contract, ContractState.DISBURSED, "Merchant settled from escrow", actor_id)
        self._enter(contract, ContractState.IN_REPAYMENT, "Payroll repayment scheduled", actor_id)
        contract.external_status = ExternalStatus.CONFIRMED.value
        contract.ledger_status = LedgerBookingStatus.PENDING.value

        for installment in contract.installments:
            self.session.add(DeductionInstruction(
                employee_id=contract.employee_id,
                employer_id=contract.employer_id,
                contract_id=contract.id,
                installment_id=installment.id,
                monthly_amount=installment.amount_due,
                payroll_cycle=payroll_cycle_for(installment.due_date),
                status=DeductionStatus.PENDING_PAYROLL.value,
            ))
        self._outbox.enqueue(LOAN_BOOKING_EVENT, contract.id, {"contract_id": contract.id})
        self._flush(contract)

        logger.info("merchant_settled", extra={
            "contract_id": str(contract.id),
            "payout": str(payout),
            "platform_share": str(share),
            "installments": len(contract.installments),
        })
        return self._result(contract, "release", txn, result, payout)

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def refund(
        self,
        contract_id: UUID,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
        actor_id: UUID | None = None,
    ) -> SettlementResult:
        """
        Reverse a hold or a disbursement.

        ESCROW_HELD accepts only a full refund (-> CANCELLED).  After
        release, a refund moves the contract to DISPUTED and, once the
        whole principal has been refunded, to REFUNDED.
        """
        request = {"contract_id": str(contract_id), "amount": str(amount), "reason": reason}
        return self._idempotent(
            "settlement.refund", idempotency_key, request, contract_id, actor_id,
            lambda contract: self._refund(contract, to_decimal(amount), reason, actor_id, retrying=False),
        )

    def refunded_total(self, contract_id: UUID) -> Decimal:
        total = ZERO
        for txn in self._escrow_transactions(contract_id, EscrowTransactionKind.REFUND):
            if txn.status == EscrowTransactionStatus.SUCCESS:
                total += txn.amount
        return total

    def _refund(
        self,
        contract: Contract,
        amount: Decimal,
        reason: str,
        actor_id: UUID | None,
        retrying: bool,
    ) -> SettlementResult:
        if amount <= ZERO:
            raise ValidationError(f"Refund amount must be positive, got {amount}", field="amount")
        state = ContractState(contract.state)

        if state == ContractState.ESCROW_HELD:
            if amount != contract.principal:
                raise ValidationError(
                    f"Escrow holds are refunded in full ({contract.principal}), got {amount}",
                    field="amount",
                )
            source = LedgerAccount.ESCROW
        elif state in _REFUNDABLE_AFTER_RELEASE:
            refundable = contract.principal - self.refunded_total(contract.id)
            if amount > refundable:
                raise ValidationError(
                    f"Refund {amount} exceeds refundable balance {refundable}",
                    field="amount",
                )
            # A dispute opened during the hold still has the money in escrow
            source = LedgerAccount.MERCHANT if self._released(contract.id) else LedgerAccount.ESCROW
        else:
            raise IllegalTransitionError(
                str(contract.id), state.value, ContractState.REFUNDED.value
            )

        txn, result = self._call_escrow(contract, EscrowTransactionKind.REFUND, amount)
        if not result.ok:
            payload = {"amount": amount, "reason": reason}
            return self._gateway_failed(contract, "refund", txn, result, payload, retrying)

        self._post_ledger(contract, f"refund:{txn.id}", txn.reference, [
            (LedgerEntryType.REVERSAL, source, -amount),
            (LedgerEntryType.REVERSAL, LedgerAccount.LENDER, amount),
        ])

        if state == ContractState.ESCROW_HELD:
            self._enter(contract, ContractState.CANCELLED, f"Refunded before release: {reason}", actor_id)
        else:
            if state != ContractState.DISPUTED:
                self._enter(contract, ContractState.DISPUTED, f"Refund requested: {reason}", actor_id)
            if self.refunded_total(contract.id) >= contract.principal:
                self._enter(contract, ContractState.REFUNDED, f"Fully refunded: {reason}", actor_id)
        contract.external_status = ExternalStatus.CONFIRMED.value
        self._flush(contract)

        logger.info("refund_completed", extra={
            "contract_id": str(contract.id),
            "amount": str(amount),
            "state": contract.state,
        })
        return self._result(contract, "refund", txn, result, amount)

    # ------------------------------------------------------------------
    # Payroll remittance
    # ------------------------------------------------------------------

    def post_payroll_remittance(
        self,
        remittance: Remittance,
        idempotency_key: str,
        actor_id: UUID | None = None,
    ) -> RemittanceResult:
        """
        Apply an employer remittance line by line.

        Each line runs in its own savepoint; a failing line is reported in
        the result and does not block the others.
        """
        with LogContext.bind(employer_id=remittance.employer_id, actor_id=actor_id):
            cached = self._idempotency.replay(
                "settlement.remittance", idempotency_key, remittance.fingerprint()
            )
            if cached is not None:
                return RemittanceResult.from_dict(cached, replayed=True)

            self._employers.require(remittance.employer_id)
            now = self._clock.now()
            results: list[LineResult] = []
            for number, line in enumerate(remittance.lines, start=1):
                try:
                    with self.session.begin_nested():
                        results.append(self._apply_line(remittance, number, line, now, actor_id))
                except BnplError as exc:
                    logger.warning("remittance_line_failed", extra={
                        "contract_id": str(line.contract_id),
                        "error_code": exc.code,
                        "detail": str(exc),
                    })
                    results.append(LineResult(
                        contract_id=str(line.contract_id),
                        success=False,
                        error_code=exc.code,
                        error=str(exc),
                    ))

            applied = sum((Decimal(r.applied) for r in results), ZERO)
            failed = sum(1 for r in results if not r.success)
            record = PayrollRemittance(
                employer_id=remittance.employer_id,
                payroll_cycle=remittance.payroll_cycle,
                reference=remittance.reference,
                total_amount=remittance.total_amount,
                applied_amount=applied,
                line_count=len(remittance.lines),
                failed_count=failed,
                received_at=now,
            )
            self.session.add(record)
            self.session.flush()

            result = RemittanceResult(
                remittance_id=str(record.id),
                employer_id=str(remittance.employer_id),
                payroll_cycle=remittance.payroll_cycle,
                total_amount=str(remittance.total_amount),
                applied_amount=str(applied),
                processed=len(results) - failed,
                failed=failed,
                lines=tuple(results),
            )
            self._idempotency.remember(
                "settlement.remittance", idempotency_key,
                remittance.fingerprint(), result.to_dict(),
            )
            logger.info("remittance_posted", extra={
                "remittance_id": str(record.id),
                "payroll_cycle": remittance.payroll_cycle,
                "total_amount": str(remittance.total_amount),
                "applied_amount": str(applied),
                "failed": failed,
            })
            return result

    def _apply_line(
        self,
        remittance: Remittance,
        number: int,
        line: RemittanceLine,
        now: datetime,
        actor_id: UUID | None,
    ) -> LineResult:
        amount = to_decimal(line.amount)
        if amount <= ZERO:
            raise ValidationError(f"Remittance amount must be positive, got {amount}", field="amount")
        contract = self._contracts.get_for_update(line.contract_id)
        if contract.employer_id != remittance.employer_id:
            raise ValidationError(
                f"Contract {contract.id} is not payable by employer {remittance.employer_id}",
                field="contract_id",
            )
        if contract.state != ContractState.IN_REPAYMENT:
            raise ValidationError(
                f"Contract {contract.id} is {contract.state}; repayments require IN_REPAYMENT",
                field="contract_id",
            )

        remaining = amount
        paid = []
        for installment in contract.installments:
            if remaining <= ZERO:
                break
            if installment.status not in UNPAID_INSTALLMENT_STATUSES:
                continue
            payment = min(remaining, installment.outstanding)
            if payment <= ZERO:
                continue
            installment.amount_paid += payment
            remaining -= payment
            if installment.outstanding <= ZERO:
                installment.status = InstallmentStatus.PAID.value
                installment.paid_at = now
                paid.append(installment.id)
            else:
                installment.status = InstallmentStatus.DEDUCTED.value

        applied = amount - remaining
        # An instruction is executed once its installment is fully paid
        if paid:
            instructions = self.session.execute(
                select(DeductionInstruction).where(DeductionInstruction.installment_id.in_(paid))
            ).scalars().all()
            for instruction in instructions:
                instruction.status = DeductionStatus.EXECUTED.value

        contract.total_paid += applied
        contract.total_due = contract.total_payable - contract.total_paid

        reference = line.reference or f"{remittance.reference}#{number}"
        if applied > ZERO:
            self._post_ledger(contract, f"repayment:{remittance.reference}:{number}", reference, [
                (LedgerEntryType.REPAYMENT, LedgerAccount.EMPLOYER_PAYROLL, -applied),
                (LedgerEntryType.REPAYMENT, LedgerAccount.LENDER, applied),
            ])
            self._outbox.enqueue(REPAYMENT_EVENT, contract.id, {
                "contract_id": contract.id, "amount": applied, "reference": reference,
            })

        if contract.all_installments_paid():
            self._enter(contract, ContractState.CLOSED, "All installments paid", actor_id)
        self._flush(contract)

        return LineResult(
            contract_id=str(contract.id),
            success=True,
            applied=str(applied),
            unapplied=str(remaining),
            state=contract.state,
            installments_paid=len(paid),
        )

    # ------------------------------------------------------------------
    # Disputes, defaults, cancellation
    # ------------------------------------------------------------------

    def open_dispute(self, contract_id: UUID, reason: str, actor_id: UUID | None = None) -> Contract:
        return self._simple_transition(contract_id, ContractState.DISPUTED, f"Dispute opened: {reason}", actor_id)

    def resolve_dispute(
        self,
        contract_id: UUID,
        resolution: str,
        reinstate: bool = True,
        actor_id: UUID | None = None,
    ) -> Contract:
        """Close a dispute: back to IN_REPAYMENT, or CANCELLED if not reinstated."""
        target = ContractState.IN_REPAYMENT if reinstate else ContractState.CANCELLED
        return self._simple_transition(contract_id, target, f"Dispute resolved: {resolution}", actor_id)

    def mark_defaulted(self, contract_id: UUID, reason: str, actor_id: UUID | None = None) -> Contract:
        contract = self._simple_transition(contract_id, ContractState.DEFAULTED, reason, actor_id)
        logger.warning("contract_defaulted", extra={
            "contract_id": str(contract_id), "outstanding": str(contract.outstanding),
        })
        return contract

    def cancel(self, contract_id: UUID, reason: str, actor_id: UUID | None = None) -> Contract:
        """Cancel before any money was held."""
        with LogContext.bind(contract_id=contract_id, actor_id=actor_id):
            contract = self._contracts.get_for_update(contract_id)
            if contract.state not in (
                ContractState.PRE_APPROVED,
                ContractState.ORDER_CREATED,
                ContractState.CUSTOMER_AUTHORIZED,
            ):
                raise IllegalTransitionError(
                    str(contract_id), contract.state, ContractState.CANCELLED.value
                )
            self._enter(contract, ContractState.CANCELLED, reason, actor_id)
            self._flush(contract)
            return contract

    def _simple_transition(
        self,
        contract_id: UUID,
        target: ContractState,
        reason: str,
        actor_id: UUID | None,
    ) -> Contract:
        with LogContext.bind(contract_id=contract_id, actor_id=actor_id):
            contract = self._contracts.get_for_update(contract_id)
            self._enter(contract, target, reason, actor_id)
            self._flush(contract)
            return contract

    # ------------------------------------------------------------------
    # Retry (outbox handler)
    # ------------------------------------------------------------------

    def retry(self, payload: dict[str, Any]) -> SettlementResult | None:
        """
        Re-run a hold, release or refund whose gateway call failed.

        Raises ExternalGatewayError if the gateway fails again, so the
        dispatcher backs off.  Returns None if the contract has moved on.
        """
        contract_id = UUID(payload["contract_id"])
        operation = payload["operation"]
        with LogContext.bind(contract_id=contract_id):
            contract = self._contracts.get_for_update(contract_id)
            if contract.external_status != ExternalStatus.PENDING_EXTERNAL:
                logger.info("settlement_retry_skipped", extra={
                    "operation": operation, "state": contract.state,
                })
                return None
            match operation:
                case "hold":
                    return self._hold(contract, None, None, retrying=True)
                case "release":
                    return self._release(contract, None, retrying=True)
                case "refund":
                    return self._refund(
                        contract, Decimal(payload["amount"]), payload["reason"], None, retrying=True,
                    )
                case _:
                    raise ValueError(f"Unknown settlement operation: {operation}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _idempotent(
        self,
        scope: str,
        idempotency_key: str,
        request: dict[str, Any],
        contract_id: UUID,
        actor_id: UUID | None,
        operation: Callable[[Contract], SettlementResult],
    ) -> SettlementResult:
        with LogContext.bind(
            contract_id=contract_id, idempotency_key=idempotency_key, actor_id=actor_id,
        ):
            cached = self._idempotency.replay(scope, idempotency_key, request)
            if cached is not None:
                return SettlementResult.from_dict(cached, replayed=True)

            contract = self._contracts.get_for_update(contract_id)
            result = operation(contract)
            if result.status == SettlementStatus.COMPLETED:
                self._idempotency.remember(scope, idempotency_key, request, result.to_dict())
            return result

    def _require_transition(self, contract: Contract, target: ContractState) -> None:
        if not can_transition(contract.state, target):
            raise IllegalTransitionError(str(contract.id), contract.state, target.value)

    def _enter(
        self,
        contract: Contract,
        target: ContractState,
        reason: str,
        actor_id: UUID | None,
    ) -> None:
        transition(contract, target, reason=reason, actor_id=actor_id, occurred_at=self._clock.now())
        if target in CAPITAL_RELEASING_STATES:
            self._capital.release(contract.lender_id, contract.principal)
        if target in TERMINAL_STATES:
            self._stop_deductions(contract)
        logger.info("contract_transitioned", extra={
            "contract_id": str(contract.id), "to_state": target.value,
        })

    def _stop_deductions(self, contract: Contract) -> None:
        instructions = self.session.execute(
            select(DeductionInstruction).where(
                DeductionInstruction.contract_id == contract.id,
                DeductionInstruction.status.in_(_OPEN_DEDUCTION_STATUSES),
            )
        ).scalars().all()
        for instruction in instructions:
            instruction.status = DeductionStatus.FAILED.value
        if instructions:
            logger.info("deductions_stopped", extra={
                "contract_id": str(contract.id),
                "state": contract.state,
                "instructions": len(instructions),
            })

    def _flush(self, contract: Contract) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("Contract", str(contract.id)) from exc

    def _call_escrow(
        self,
        contract: Contract,
        kind: EscrowTransactionKind,
        amount: Decimal,
    ) -> tuple[EscrowTransaction, GatewayResult]:
        now = self._clock.now()
        attempt = len(self._escrow_transactions(contract.id, kind)) + 1
        txn = EscrowTransaction(
            contract_id=contract.id,
            kind=kind.value,
            amount=amount,
            status=EscrowTransactionStatus.PENDING.value,
            reference=f"{kind.value}-{contract.id}-{attempt}",
            occurred_at=now,
            settlement_date=now.date(),
        )
        self.session.add(txn)
        self.session.flush()

        call = {
            EscrowTransactionKind.HOLD: self._escrow.hold,
            EscrowTransactionKind.RELEASE: self._escrow.release,
            EscrowTransactionKind.REFUND: self._escrow.refund,
        }[kind]
        try:
            result = call(amount, txn.reference)
        except ExternalGatewayError as exc:
            result = GatewayResult("", GatewayStatus.FAILED, str(exc))

        txn.gateway_transaction_id = result.transaction_id or None
        if result.ok:
            txn.status = EscrowTransactionStatus.SUCCESS.value
        else:
            txn.status = EscrowTransactionStatus.FAILED.value
            txn.failure_reason = result.detail or "gateway reported failure"
        self.session.flush()
        return txn, result

    def _gateway_failed(
        self,
        contract: Contract,
        operation: str,
        txn: EscrowTransaction,
        result: GatewayResult,
        payload: dict[str, Any],
        retrying: bool,
    ) -> SettlementResult:
        logger.warning(f"escrow_{operation}_failed", extra={
            "contract_id": str(contract.id),
            "escrow_transaction_id": str(txn.id),
            "detail": result.detail,
            "retrying": retrying,
        })
        if retrying:
            raise ExternalGatewayError("escrow", operation, txn.reference, result.detail)

        contract.external_status = ExternalStatus.PENDING_EXTERNAL.value
        self._outbox.enqueue(RETRY_EVENT, contract.id, {
            "contract_id": contract.id, "operation": operation, **payload,
        })
        self._flush(contract)
        return SettlementResult(
            contract_id=str(contract.id),
            operation=operation,
            status=SettlementStatus.PENDING_RETRY,
            state=contract.state,
            amount=str(txn.amount),
            escrow_transaction_id=str(txn.id),
            detail=result.detail,
        )

    def _result(
        self,
        contract: Contract,
        operation: str,
        txn: EscrowTransaction,
        result: GatewayResult,
        amount: Decimal,
    ) -> SettlementResult:
        return SettlementResult(
            contract_id=str(contract.id),
            operation=operation,
            status=SettlementStatus.COMPLETED,
            state=contract.state,
            amount=str(amount),
            escrow_transaction_id=str(txn.id),
            gateway_transaction_id=result.transaction_id,
        )

    def _post_ledger(
        self,
        contract: Contract,
        event_key: str,
        reference: str,
        entries: list[tuple[LedgerEntryType, LedgerAccount, Decimal]],
    ) -> None:
        if sum((amount for _, _, amount in entries), ZERO) != ZERO:
            raise ValueError(f"Ledger event {event_key} does not net to zero")
        now = self._clock.now()
        for entry_type, account, amount in entries:
            self.session.add(LedgerEntry(
                contract_id=contract.id,
                entry_type=entry_type.value,
                account=account.value,
                amount=amount,
                reference=reference,
                event_key=event_key,
                occurred_at=now,
            ))

    def _released(self, contract_id: UUID) -> bool:
        return any(
            txn.status == EscrowTransactionStatus.SUCCESS
            for txn in self._escrow_transactions(contract_id, EscrowTransactionKind.RELEASE)
        )

    def _escrow_transactions(
        self, contract_id: UUID, kind: EscrowTransactionKind,
    ) -> list[EscrowTransaction]:
        return list(self.session.execute(
            select(EscrowTransaction).where(
                EscrowTransaction.contract_id == contract_id,
                EscrowTransaction.kind == kind.value,
            )
        ).scalars().all())
