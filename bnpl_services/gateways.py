"""
External collaborator contracts: credit bureau, escrow provider, loan
ledger and event bus.

The orchestration services depend only on these protocols.  The
``InMemory*`` implementations are deterministic stand-ins used by the
development API wiring and by tests; failures are injected explicitly with
``fail_next()`` rather than at random.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from itertools import count
from typing import Any, Protocol, runtime_checkable

from bnpl_kernel.domain.amounts import ZERO
from bnpl_kernel.domain.clock import Clock
from bnpl_kernel.exceptions import ExternalGatewayError


class GatewayStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class GatewayResult:
    """``{transactionId, status}`` as returned by an external system."""

    transaction_id: str
    status: GatewayStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == GatewayStatus.SUCCESS


@dataclass(frozen=True)
class CrbReport:
    score: int | None
    reference: str = ""


@dataclass(frozen=True)
class LoanStatus:
    external_loan_id: str
    outstanding: Decimal
    status: str


@runtime_checkable
class CrbService(Protocol):
    def check(self, national_id: str, phone: str) -> CrbReport: ...


@runtime_checkable
class EscrowGateway(Protocol):
    def hold(self, amount: Decimal, reference: str) -> GatewayResult: ...

    def release(self, amount: Decimal, reference: str) -> GatewayResult: ...

    def refund(self, amount: Decimal, reference: str) -> GatewayResult: ...

    def settled_total(self, period_key: str) -> Decimal:
        """Total the provider reports as released to merchants on a day (YYYY-MM-DD)."""
        ...


@runtime_checkable
class LoanLedgerGateway(Protocol):
    def create_loan(
        self,
        contract_id: str,
        lender_id: str,
        principal: Decimal,
        total_payable: Decimal,
        tenor_days: int,
        reference: str,
    ) -> GatewayResult:
        """Book a loan; ``transaction_id`` of the result is the external loan id."""
        ...

    def post_repayment(self, external_loan_id: str, amount: Decimal, reference: str) -> GatewayResult: ...

    def get_status(self, external_loan_id: str) -> LoanStatus: ...


@runtime_checkable
class EventBus(Protocol):
    def publish(self, event: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class _FailureInjection:
    def __init__(self) -> None:
        self._pending_failures: dict[str, int] = {}

    def fail_next(self, operation: str, times: int = 1) -> None:
        self._pending_failures[operation] = self._pending_failures.get(operation, 0) + times

    def _should_fail(self, operation: str) -> bool:
        remaining = self._pending_failures.get(operation, 0)
        if remaining > 0:
            self._pending_failures[operation] = remaining - 1
            return True
        return False


class InMemoryCrbService:
    """Scores by phone; unknown phones get ``default_score``."""

    def __init__(self, scores: dict[str, int | None] | None = None, default_score: int | None = 700):
        self.scores = dict(scores or {})
        self.default_score = default_score
        self.calls: list[tuple[str, str]] = []

    def check(self, national_id: str, phone: str) -> CrbReport:
        self.calls.append((national_id, phone))
        score = self.scores.get(phone, self.default_score)
        return CrbReport(score=score, reference=f"CRB-{national_id}")


@dataclass
class EscrowCall:
    operation: str
    amount: Decimal
    reference: str
    transaction_id: str


class InMemoryEscrowGateway(_FailureInjection):
    """
    Records every call.  ``settlements`` maps a day key to the released
    total the provider would report; with a clock, successful releases are
    settled on the clock's day.  Tests overwrite it to simulate drift.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        super().__init__()
        self.calls: list[EscrowCall] = []
        self.settlements: dict[str, Decimal] = {}
        self._clock = clock
        self._ids = count(1)

    def _call(self, operation: str, amount: Decimal, reference: str) -> GatewayResult:
        txn_id = f"ESC-{operation.upper()}-{next(self._ids):06d}"
        if self._should_fail(operation):
            return GatewayResult(txn_id, GatewayStatus.FAILED, f"{operation} declined by provider")
        self.calls.append(EscrowCall(operation, amount, reference, txn_id))
        if operation == "release" and self._clock is not None:
            self.record_settlement(self._clock.today().isoformat(), amount)
        return GatewayResult(txn_id, GatewayStatus.SUCCESS)

    def hold(self, amount: Decimal, reference: str) -> GatewayResult:
        return self._call("hold", amount, reference)

    def release(self, amount: Decimal, reference: str) -> GatewayResult:
        return self._call("release", amount, reference)

    def refund(self, amount: Decimal, reference: str) -> GatewayResult:
        return self._call("refund", amount, reference)

    def record_settlement(self, period_key: str, amount: Decimal) -> None:
        self.settlements[period_key] = self.settlements.get(period_key, ZERO) + amount

    def settled_total(self, period_key: str) -> Decimal:
        return self.settlements.get(period_key, ZERO)

    def count(self, operation: str) -> int:
        return sum(1 for c in self.calls if c.operation == operation)


@dataclass
class _Loan:
    contract_id: str
    lender_id: str
    principal: Decimal
    outstanding: Decimal
    status: str = "ACTIVE"
    repayments: list[tuple[Decimal, str]] = field(default_factory=list)


class InMemoryLoanLedgerGateway(_FailureInjection):
    """Keeps one outstanding balance per booked loan."""

    def __init__(self) -> None:
        super().__init__()
        self.loans: dict[str, _Loan] = {}
        self._ids = count(1)

    def create_loan(
        self,
        contract_id: str,
        lender_id: str,
        principal: Decimal,
        total_payable: Decimal,
        tenor_days: int,
        reference: str,
    ) -> GatewayResult:
        if self._should_fail("create_loan"):
            return GatewayResult("", GatewayStatus.FAILED, "loan ledger unavailable")
        loan_id = f"LOAN-{next(self._ids):06d}"
        self.loans[loan_id] = _Loan(contract_id, lender_id, principal, total_payable)
        return GatewayResult(loan_id, GatewayStatus.SUCCESS)

    def post_repayment(self, external_loan_id: str, amount: Decimal, reference: str) -> GatewayResult:
        if self._should_fail("post_repayment"):
            return GatewayResult("", GatewayStatus.FAILED, "loan ledger unavailable")
        loan = self.loans.get(external_loan_id)
        if loan is None:
            return GatewayResult("", GatewayStatus.FAILED, f"unknown loan {external_loan_id}")
        loan.outstanding -= amount
        loan.repayments.append((amount, reference))
        if loan.outstanding <= ZERO:
            loan.status = "CLOSED"
        return GatewayResult(f"RPY-{next(self._ids):06d}", GatewayStatus.SUCCESS)

    def get_status(self, external_loan_id: str) -> LoanStatus:
        if self._should_fail("get_status"):
            raise ExternalGatewayError("loan_ledger", "get_status", external_loan_id, "timeout")
        loan = self.loans.get(external_loan_id)
        if loan is None:
            raise ExternalGatewayError(
                "loan_ledger", "get_status", external_loan_id, "unknown loan"
            )
        return LoanStatus(external_loan_id, loan.outstanding, loan.status)


class InMemoryEventBus(_FailureInjection):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[dict[str, Any]] = []

    def publish(self, event: dict[str, Any]) -> None:
        if self._should_fail("publish"):
            raise ExternalGatewayError("event_bus", "publish", str(event.get("event_type")))
        self.published.append(event)
