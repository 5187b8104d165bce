"""
bnpl_services.checkout_service -- Checkout authorization and customer confirmation.

Responsibility:
    Turns a merchant checkout request into a committed, capital-backed
    contract: idempotency lookup, request validation, party checks, credit
    decision, lender allocation with atomic capital reservation, contract
    and installment creation, customer authorization token, outbox event.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes CreditEngine, LenderAllocationEngine and build_schedule (pure)
    with LenderCapitalService, IdempotencyService and OutboxService.

Invariants enforced:
    - Capital reservation, contract creation, idempotency record and outbox
      event are flushed in one transaction owned by the caller.
    - A lost reservation race excludes that lender and re-allocates; the
      loop is bounded by the pool size.
    - sum(installments) == total_payable == principal + processing_fee.
    - Replaying an idempotency key with the same payload returns the
      original result and touches no capital.

Failure modes:
    - ValidationError / InactivePartyError: bad request or inactive party.
    - PartyNotFoundError: unknown merchant or customer phone.
    - AffordabilityDeclinedError: credit engine declined, or approved less
      than the order amount.
    - NoEligibleLenderError: no lender can fund the order.
    - CapitalExhaustedError: every lender chosen lost its reservation to a
      concurrent checkout; retryable.
    - IdempotencyConflictError: key reused with a different payload.
    - AuthorizationTokenError: bad or expired token on confirmation.

Audit relevance:
    The contract stores decision reasoning, confidence score, allocation
    strategy and reason; PRE_APPROVED -> ORDER_CREATED is recorded in the
    transition history.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_config.bridges import (
    build_allocation_parameters,
    build_credit_parameters,
    default_allocation_strategy,
)
from bnpl_engines.allocation import (
    AllocationRequest,
    AllocationStrategy,
    LenderAllocation,
    LenderAllocationEngine,
    describe_decline,
)
from bnpl_engines.credit import CreditEngine, CreditHistory, CreditRequest
from bnpl_engines.schedule import build_schedule
from bnpl_kernel.domain.amounts import ZERO, floor_amount, to_decimal
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.domain.lifecycle import ContractState, transition
from bnpl_kernel.exceptions import (
    AffordabilityDeclinedError,
    AuthorizationTokenError,
    CapitalExhaustedError,
    ExternalGatewayError,
    InactivePartyError,
    NoEligibleLenderError,
    ValidationError,
)
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.contract import Contract, Installment, InstallmentStatus
from bnpl_kernel.models.party import Employee
from bnpl_kernel.repositories import (
    ContractRepository,
    EmployeeRepository,
    EmployerRepository,
    MerchantRepository,
)
from bnpl_kernel.services.base import BaseService
from bnpl_kernel.services.capital_service import LenderCapitalService
from bnpl_kernel.services.idempotency_service import IdempotencyService
from bnpl_kernel.services.outbox_service import OutboxService
from bnpl_kernel.utils.hashing import sign, signatures_match
from bnpl_services.gateways import CrbService
from bnpl_services.lender_pool import load_pool

logger = get_logger("services.checkout")

CHECKOUT_SCOPE = "checkout"


@dataclass(frozen=True)
class CheckoutRequest:
    merchant_id: UUID
    customer_phone: str
    order_amount: Decimal
    tenor_days: int
    idempotency_key: str
    strategy: AllocationStrategy | None = None

    def fingerprint(self) -> dict[str, Any]:
        """Fields that identify the request for idempotent replay."""
        return {
            "merchant_id": str(self.merchant_id),
            "customer_phone": self.customer_phone,
            "order_amount": str(self.order_amount),
            "tenor_days": self.tenor_days,
            "strategy": self.strategy.value if self.strategy else None,
        }


@dataclass(frozen=True)
class CheckoutResult:
    contract_id: str
    approved_amount: str
    installment_amount: str
    installment_count: int
    processing_fee: str
    total_payable: str
    lender_id: str
    auth_token: str
    expires_in: int
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("replayed")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], replayed: bool = False) -> "CheckoutResult":
        return cls(**data, replayed=replayed)


class CheckoutService(BaseService):
    """
    Checkout orchestration.

    Contract:
        ``authorize`` either returns a CheckoutResult for a contract in
        ORDER_CREATED with capital reserved, or raises a typed error with
        nothing persisted by this call (the caller rolls back).
    Non-goals:
        Escrow and money movement (SettlementService).
    """

    def __init__(
        self,
        session: Session,
        crb: CrbService,
        token_secret: str,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        if not token_secret:
            raise ValueError("token_secret must be non-empty")
        self._crb = crb
        self._token_secret = token_secret
        self._policy = policy or get_active_policy()
        self._clock = clock or SystemClock()
        self._credit = CreditEngine(build_credit_parameters(self._policy))
        self._allocation = LenderAllocationEngine(build_allocation_parameters(self._policy))
        self._capital = LenderCapitalService(session)
        self._outbox = OutboxService(session, self._clock)
        self._idempotency = IdempotencyService(
            session,
            self._clock,
            default_ttl=timedelta(hours=self._policy.checkout.idempotency_ttl_hours),
        )
        self._contracts = ContractRepository(session)
        self._employees = EmployeeRepository(session)
        self._employers = EmployerRepository(session)
        self._merchants = MerchantRepository(session)

    # ------------------------------------------------------------------
    # Authorize
    # ------------------------------------------------------------------

    def authorize(self, request: CheckoutRequest, actor_id: UUID | None = None) -> CheckoutResult:
        with LogContext.bind(idempotency_key=request.idempotency_key, actor_id=actor_id):
            cached = self._idempotency.replay(
                CHECKOUT_SCOPE, request.idempotency_key, request.fingerprint()
            )
            if cached is not None:
                return CheckoutResult.from_dict(cached, replayed=True)

            logger.info("checkout_started", extra={
                "merchant_id": str(request.merchant_id),
                "order_amount": str(request.order_amount),
                "tenor_days": request.tenor_days,
            })
            result = self._authorize(request, actor_id)
            self._idempotency.remember(
                CHECKOUT_SCOPE, request.idempotency_key,
                request.fingerprint(), result.to_dict(),
            )
            return result

    def _authorize(self, request: CheckoutRequest, actor_id: UUID | None) -> CheckoutResult:
        self._validate(request)

        merchant = self._merchants.require(request.merchant_id)
        if not merchant.is_active:
            raise InactivePartyError("Merchant", str(merchant.id))
        employee = self._employees.require_by_phone(request.customer_phone)
        if not employee.is_active:
            raise InactivePartyError("Employee", str(employee.id))
        employer = self._employers.require(employee.employer_id)
        if not employer.is_active:
            raise InactivePartyError("Employer", str(employer.id))

        decision = self._credit.decide(request=self._credit_request(employee, request))
        if not decision.approved:
            raise AffordabilityDeclinedError(
                reasoning=decision.reasoning,
                confidence_score=str(decision.confidence_score),
                decline_code=decision.decline_code.value,
            )
        if decision.approved_amount < request.order_amount:
            raise AffordabilityDeclinedError(
                reasoning=(
                    f"Order amount exceeds approval. Approved: {decision.approved_amount}. "
                    f"{decision.reasoning}"
                ),
                confidence_score=str(decision.confidence_score),
                decline_code="AMOUNT_EXCEEDS_APPROVAL",
                approved_amount=str(decision.approved_amount),
            )

        principal = request.order_amount
        strategy = request.strategy or default_allocation_strategy(self._policy)
        allocation = self._allocate_and_reserve(
            AllocationRequest(
                amount=principal,
                tenor_days=decision.tenor_days,
                risk_tier=employee.risk_tier,
                strategy=strategy,
                exclusive_lender_id=employer.exclusive_lender_id,
            )
        )

        now = self._clock.now()
        total_payable = principal + decision.processing_fee
        schedule = build_schedule(
            total_payable=total_payable,
            tenor_days=decision.tenor_days,
            start_date=self._clock.today(),
            period_days=self._policy.checkout.installment_period_days,
        )
        contract = Contract(
            employee_id=employee.id,
            employer_id=employer.id,
            merchant_id=merchant.id,
            lender_id=allocation.lender_id,
            principal=principal,
            tenor_days=decision.tenor_days,
            interest_rate=decision.interest_rate,
            processing_fee=decision.processing_fee,
            total_payable=total_payable,
            installment_amount=schedule.installment_amount,
            total_paid=ZERO,
            total_due=total_payable,
            state=ContractState.PRE_APPROVED.value,
            allocation_strategy=allocation.strategy_used.value,
            allocation_reason=allocation.reason,
            decision_reasoning=decision.reasoning,
            confidence_score=decision.confidence_score,
            opened_at=now,
            created_by_id=actor_id,
        )
        for line in schedule.lines:
            contract.installments.append(
                Installment(
                    number=line.number,
                    due_date=line.due_date,
                    amount_due=line.amount_due,
                    amount_paid=ZERO,
                    status=InstallmentStatus.PENDING.value,
                )
            )
        self.session.add(contract)
        self.session.flush()

        transition(
            contract, ContractState.ORDER_CREATED,
            reason=f"Order of {principal} created at merchant {merchant.name}",
            actor_id=actor_id, occurred_at=now,
        )
        self.session.flush()

        ttl = self._policy.checkout.auth_token_ttl_seconds
        token = self.issue_auth_token(contract.id, employee.phone, ttl)

        self._outbox.enqueue("checkout.completed", contract.id, {
            "contract_id": contract.id,
            "employee_id": employee.id,
            "merchant_id": merchant.id,
            "lender_id": allocation.lender_id,
            "principal": principal,
            "total_payable": total_payable,
            "phone": employee.phone,
        })

        logger.info("checkout_completed", extra={
            "contract_id": str(contract.id),
            "lender_id": str(allocation.lender_id),
            "approved_amount": str(principal),
            "strategy": allocation.strategy_used.value,
        })
        return CheckoutResult(
            contract_id=str(contract.id),
            approved_amount=str(principal),
            installment_amount=str(schedule.installment_amount),
            installment_count=schedule.count,
            processing_fee=str(decision.processing_fee),
            total_payable=str(total_payable),
            lender_id=str(allocation.lender_id),
            auth_token=token,
            expires_in=ttl,
        )

    def _validate(self, request: CheckoutRequest) -> None:
        policy = self._policy.checkout
        amount = to_decimal(request.order_amount)
        if amount <= ZERO or amount > policy.max_order_amount:
            raise ValidationError(
                f"Order amount must be in (0, {policy.max_order_amount}], got {amount}",
                field="order_amount",
            )
        if amount != floor_amount(amount):
            raise ValidationError("Order amount must be a whole amount", field="order_amount")
        if not policy.min_tenor_days <= request.tenor_days <= policy.max_tenor_days:
            raise ValidationError(
                f"Tenor must be in [{policy.min_tenor_days}, {policy.max_tenor_days}] days, "
                f"got {request.tenor_days}",
                field="tenor_days",
            )
        if not request.customer_phone or not request.customer_phone.strip():
            raise ValidationError("Customer phone is required", field="customer_phone")

    def _credit_request(self, employee: Employee, request: CheckoutRequest) -> CreditRequest:
        existing = (
            self._contracts.active_monthly_deductions(employee.id)
            + employee.external_monthly_deductions
        )
        deduction_limit = employee.deduction_limit
        if deduction_limit is None:
            deduction_limit = floor_amount(
                employee.net_salary * self._policy.credit.default_deduction_limit_ratio
            )
        return CreditRequest(
            net_salary=employee.net_salary,
            risk_tier=employee.risk_tier,
            existing_monthly_deductions=existing,
            requested_amount=request.order_amount,
            requested_tenor_days=request.tenor_days,
            crb_score=self._crb_score(employee),
            history=self._history(employee),
            deduction_limit=deduction_limit,
        )

    def _crb_score(self, employee: Employee) -> int | None:
        try:
            return self._crb.check(employee.national_id, employee.phone).score
        except ExternalGatewayError as exc:
            logger.warning("crb_check_failed", extra={
                "employee_id": str(employee.id), "detail": str(exc),
            })
            return None

    def _history(self, employee: Employee) -> CreditHistory:
        funded = [
            c for c in self._contracts.list_for_employee(employee.id)
            if c.funded_at is not None
        ]
        on_time = sum(
            1 for c in funded
            if c.state != ContractState.DEFAULTED
            and not self._contracts.has_overdue_installment(c.id)
        )
        return CreditHistory(total_contracts=len(funded), on_time_contracts=on_time)

    def _allocate_and_reserve(self, request: AllocationRequest) -> LenderAllocation:
        excluded: set[UUID] = set()
        pool = load_pool(self.session)
        for _ in range(len(pool) + 1):
            allocation = self._allocation.allocate(
                request=AllocationRequest(
                    amount=request.amount,
                    tenor_days=request.tenor_days,
                    risk_tier=request.risk_tier,
                    strategy=request.strategy,
                    exclusive_lender_id=request.exclusive_lender_id,
                    excluded_lender_ids=frozenset(excluded),
                ),
                pool=pool,
            )
            if allocation is None:
                break
            if self._capital.reserve(allocation.lender_id, request.amount):
                return allocation
            logger.warning("allocation_reservation_lost", extra={
                "lender_id": str(allocation.lender_id),
                "amount": str(request.amount),
            })
            excluded.add(allocation.lender_id)
            pool = load_pool(self.session)

        if excluded:
            raise CapitalExhaustedError(
                ",".join(sorted(str(lender_id) for lender_id in excluded)), str(request.amount),
            )
        logger.info("checkout_no_eligible_lender", extra={"reason": describe_decline(request)})
        raise NoEligibleLenderError(str(request.amount), request.tenor_days, request.risk_tier)

    # ------------------------------------------------------------------
    # Customer authorization
    # ------------------------------------------------------------------

    def issue_auth_token(self, contract_id: UUID, phone: str, ttl_seconds: int) -> str:
        """``<expiry epoch>.<HMAC-SHA256 of contractId:phone:expiry>``."""
        expiry = int(self._clock.now().timestamp()) + ttl_seconds
        signature = sign(self._token_secret, f"{contract_id}:{phone}:{expiry}")
        return f"{expiry}.{signature}"

    def confirm_authorization(
        self,
        contract_id: UUID,
        auth_token: str,
        actor_id: UUID | None = None,
    ) -> Contract:
        """
        Verify the customer's token and move ORDER_CREATED -> CUSTOMER_AUTHORIZED.

        Confirming an already authorized contract with a valid token is a
        no-op.
        """
        with LogContext.bind(contract_id=contract_id, actor_id=actor_id):
            contract = self._contracts.get_for_update(contract_id)
            employee = self._employees.require(contract.employee_id)
            self._verify_token(contract_id, employee.phone, auth_token)

            if contract.state == ContractState.CUSTOMER_AUTHORIZED:
                return contract

            transition(
                contract, ContractState.CUSTOMER_AUTHORIZED,
                reason="Customer confirmed the order",
                actor_id=actor_id, occurred_at=self._clock.now(),
            )
            self.session.flush()
            logger.info("customer_authorized", extra={"contract_id": str(contract_id)})
            return contract

    def _verify_token(self, contract_id: UUID, phone: str, auth_token: str) -> None:
        expiry_text, _, signature = (auth_token or "").partition(".")
        if not expiry_text.isdigit() or not signature:
            raise AuthorizationTokenError(str(contract_id), "malformed token")
        expected = sign(self._token_secret, f"{contract_id}:{phone}:{expiry_text}")
        if not signatures_match(expected, signature):
            raise AuthorizationTokenError(str(contract_id), "signature mismatch")
        if int(expiry_text) < int(self._clock.now().timestamp()):
            raise AuthorizationTokenError(str(contract_id), "token expired")
