"""
bnpl_engines.credit -- Affordability and credit-decision engine.

Responsibility:
    Decide how much an employee may borrow right now from payroll facts and
    risk inputs: deduction capacity, annuity-based maximum principal,
    bureau and repayment-history adjustments, affordability score, pricing.
    Every decision, approved or declined, carries a human-readable
    ``reasoning`` and a numeric ``confidence_score``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import bnpl_kernel.domain and the engine tracer.
    Consumed by bnpl_services.checkout_service.

Invariants enforced:
    - Identical inputs produce identical decisions; no clock access.
    - Increasing net salary, all else equal, never lowers approved_amount.
    - approved_amount <= requested_amount, and is a whole-UGX floor.
    - Bad inputs (non-positive salary, tenor out of range, missing bureau
      score) produce a declined decision, never an exception.

Failure modes:
    - None raised for business inputs.  ``TypeError`` from to_decimal if a
      float slips into a money field.

Audit relevance:
    ``reasoning`` and ``confidence_score`` are persisted on the contract as
    the decision trail.  Invocations are traced via ``@traced_engine``.

Usage:
    engine = CreditEngine()
    decision = engine.decide(request=CreditRequest(
        net_salary=Decimal("1000000"), risk_tier="TIER_1",
        existing_monthly_deductions=Decimal("0"),
        requested_amount=Decimal("300000"), requested_tenor_days=90,
        crb_score=850, deduction_limit=Decimal("300000"),
    ))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from bnpl_engines.tracer import traced_engine
from bnpl_kernel.domain.amounts import (
    ONE,
    ZERO,
    ceil_amount,
    floor_amount,
    format_ugx,
    round_ratio,
)
from bnpl_kernel.logging_config import get_logger

logger = get_logger("engines.credit")

_HUNDRED = Decimal("100")


class DeclineCode(str, Enum):
    """Why a decision was declined."""

    INVALID_SALARY = "INVALID_SALARY"
    INVALID_TENOR = "INVALID_TENOR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNKNOWN_RISK_TIER = "UNKNOWN_RISK_TIER"
    CRB_UNAVAILABLE = "CRB_UNAVAILABLE"
    NO_DEDUCTION_CAPACITY = "NO_DEDUCTION_CAPACITY"
    LOW_AFFORDABILITY = "LOW_AFFORDABILITY"


@dataclass(frozen=True)
class TierTerms:
    """Deduction ratio and tenor ceiling of one risk tier."""

    deduction_ratio: Decimal
    max_tenor_days: int


def _default_tiers() -> dict[str, TierTerms]:
    return {
        "TIER_1": TierTerms(Decimal("0.40"), 180),
        "TIER_2": TierTerms(Decimal("0.30"), 120),
        "TIER_3": TierTerms(Decimal("0.20"), 90),
    }


@dataclass(frozen=True)
class CreditParameters:
    """
    Tunable constants of the credit engine.

    The defaults equal the shipped policy (bnpl_config/sets/default.yaml);
    the configuration bridge builds this from the active policy.
    """

    monthly_rate: Decimal = Decimal("0.03")
    annual_interest_rate: Decimal = Decimal("0.36")
    processing_fee_rate: Decimal = Decimal("0.01")
    min_affordability_score: Decimal = Decimal("40")
    min_tenor_days: int = 30
    max_tenor_days: int = 180
    days_per_month: int = 30
    score_multiplier: Decimal = Decimal("20")
    crb_max_score: int = 1000
    # (minimum score, adjustment), highest band first
    crb_bands: tuple[tuple[int, Decimal], ...] = (
        (800, Decimal("1.0")),
        (650, Decimal("0.9")),
        (500, Decimal("0.7")),
    )
    crb_floor_adjustment: Decimal = Decimal("0.5")
    history_base: Decimal = Decimal("0.8")
    history_weight: Decimal = Decimal("0.2")
    tiers: dict[str, TierTerms] = field(default_factory=_default_tiers)


@dataclass(frozen=True)
class CreditHistory:
    """Prior contracts of the applicant."""

    total_contracts: int = 0
    on_time_contracts: int = 0


@dataclass(frozen=True)
class CreditRequest:
    """
    Everything the engine needs for one decision.

    ``deduction_limit`` is the employee's ceiling on a single financing;
    None means uncapped.  ``crb_score`` is None when the bureau could not
    be reached.
    """

    net_salary: Decimal
    risk_tier: str
    existing_monthly_deductions: Decimal
    requested_amount: Decimal
    requested_tenor_days: int
    crb_score: int | None
    history: CreditHistory = field(default_factory=CreditHistory)
    deduction_limit: Decimal | None = None


@dataclass(frozen=True)
class CreditDecision:
    """Outcome of ``CreditEngine.decide``."""

    approved: bool
    approved_amount: Decimal
    requested_amount: Decimal
    tenor_days: int
    interest_rate: Decimal
    processing_fee: Decimal
    monthly_payment: Decimal
    available_capacity: Decimal
    max_principal: Decimal
    max_affordable_amount: Decimal
    crb_adjustment: Decimal
    history_adjustment: Decimal
    affordability_score: Decimal
    confidence_score: Decimal
    reasoning: str
    decline_code: DeclineCode | None = None

    @property
    def total_payable(self) -> Decimal:
        return self.approved_amount + self.processing_fee


class CreditEngine:
    """
    Pure affordability engine.

    Contract:
        ``decide`` returns a CreditDecision for every well-typed request.
    Guarantees:
        Deterministic; monotone in net salary.
    Non-goals:
        Does not look anything up (bureau score, history and existing
        deductions are inputs) and does not persist.
    """

    def __init__(self, parameters: CreditParameters | None = None):
        self._params = parameters or CreditParameters()

    @property
    def parameters(self) -> CreditParameters:
        return self._params

    @traced_engine("credit", "1.0", fingerprint_fields=("request",))
    def decide(self, request: CreditRequest) -> CreditDecision:
        p = self._params

        if request.net_salary <= ZERO:
            return self._decline(
                request, DeclineCode.INVALID_SALARY,
                f"Declined. Net salary must be positive, got {format_ugx(request.net_salary)}.",
            )
        if request.requested_amount <= ZERO:
            return self._decline(
                request, DeclineCode.INVALID_AMOUNT,
                f"Declined. Requested amount must be positive, got {format_ugx(request.requested_amount)}.",
            )
        if not p.min_tenor_days <= request.requested_tenor_days <= p.max_tenor_days:
            return self._decline(
                request, DeclineCode.INVALID_TENOR,
                f"Declined. Tenor {request.requested_tenor_days} days outside "
                f"[{p.min_tenor_days}, {p.max_tenor_days}].",
            )
        terms = p.tiers.get(request.risk_tier)
        if terms is None:
            return self._decline(
                request, DeclineCode.UNKNOWN_RISK_TIER,
                f"Declined. Unknown risk tier {request.risk_tier}.",
            )
        if request.crb_score is None:
            return self._decline(
                request, DeclineCode.CRB_UNAVAILABLE,
                "Declined. Credit bureau score unavailable.",
            )

        capacity = request.net_salary * terms.deduction_ratio - request.existing_monthly_deductions
        if capacity <= ZERO:
            return self._decline(
                request, DeclineCode.NO_DEDUCTION_CAPACITY,
                f"Declined. No deduction capacity left: existing deductions "
                f"{format_ugx(request.existing_monthly_deductions)} exceed "
                f"{format_ugx(request.net_salary * terms.deduction_ratio)}.",
                available_capacity=capacity,
            )

        tenor = min(request.requested_tenor_days, terms.max_tenor_days)
        months = Decimal(tenor) / Decimal(p.days_per_month)
        max_principal = self.max_principal(capacity, months)

        crb_adj = self.crb_adjustment(request.crb_score)
        history_adj = self.history_adjustment(request.history)
        final_amount = max_principal * crb_adj * history_adj
        if request.deduction_limit is not None:
            final_amount = min(final_amount, request.deduction_limit)

        monthly = self.monthly_payment(final_amount, months)
        score = self.affordability_score(capacity, monthly, request.crb_score)
        approved = final_amount > ZERO and score >= p.min_affordability_score

        common = dict(
            requested_amount=request.requested_amount,
            tenor_days=tenor,
            interest_rate=p.annual_interest_rate,
            monthly_payment=ceil_amount(monthly),
            available_capacity=capacity,
            max_principal=max_principal,
            max_affordable_amount=final_amount,
            crb_adjustment=crb_adj,
            history_adjustment=history_adj,
            affordability_score=score,
            confidence_score=round_ratio(min(_HUNDRED, score)),
        )

        if not approved:
            logger.info("credit_declined", extra={
                "decline_code": DeclineCode.LOW_AFFORDABILITY.value,
                "score": str(round_ratio(score)),
            })
            return CreditDecision(
                approved=False,
                approved_amount=ZERO,
                processing_fee=ZERO,
                reasoning=(
                    f"Insufficient affordability. Max affordable: "
                    f"{format_ugx(floor_amount(final_amount))}. "
                    f"Score: {round_ratio(score)}/100."
                ),
                decline_code=DeclineCode.LOW_AFFORDABILITY,
                **common,
            )

        approved_amount = min(floor_amount(final_amount), request.requested_amount)
        fee = ceil_amount(approved_amount * p.processing_fee_rate)
        logger.info("credit_approved", extra={
            "approved_amount": str(approved_amount),
            "score": str(round_ratio(score)),
        })
        return CreditDecision(
            approved=True,
            approved_amount=approved_amount,
            processing_fee=fee,
            reasoning=(
                f"Approved. Salary: {format_ugx(request.net_salary)}. "
                f"Max capacity: {format_ugx(floor_amount(capacity))}. "
                f"Tier: {request.risk_tier}. CRB: {request.crb_score}/1000."
            ),
            **common,
        )

    # ------------------------------------------------------------------
    # Formula pieces
    # ------------------------------------------------------------------

    def max_principal(self, capacity: Decimal, months: Decimal) -> Decimal:
        """Present value of ``months`` payments of ``capacity``."""
        r = self._params.monthly_rate
        if r == ZERO:
            return capacity * months
        return capacity * (ONE - (ONE + r) ** (-months)) / r

    def monthly_payment(self, principal: Decimal, months: Decimal) -> Decimal:
        """Annuity payment that amortizes ``principal`` over ``months``."""
        if principal <= ZERO:
            return ZERO
        r = self._params.monthly_rate
        if r == ZERO:
            return principal / months
        growth = (ONE + r) ** months
        return principal * r * growth / (growth - ONE)

    def crb_adjustment(self, crb_score: int) -> Decimal:
        for floor, adjustment in self._params.crb_bands:
            if crb_score >= floor:
                return adjustment
        return self._params.crb_floor_adjustment

    def history_adjustment(self, history: CreditHistory) -> Decimal:
        if history.total_contracts <= 0:
            return ONE
        on_time = Decimal(history.on_time_contracts) / Decimal(history.total_contracts)
        return self._params.history_base + self._params.history_weight * on_time

    def affordability_score(
        self, capacity: Decimal, monthly_payment: Decimal, crb_score: int,
    ) -> Decimal:
        if monthly_payment <= ZERO:
            return ZERO
        p = self._params
        raw = (
            capacity / monthly_payment * p.score_multiplier
            * Decimal(crb_score) / Decimal(p.crb_max_score)
        )
        return min(_HUNDRED, raw)

    # ------------------------------------------------------------------

    def _decline(
        self,
        request: CreditRequest,
        code: DeclineCode,
        reasoning: str,
        available_capacity: Decimal = ZERO,
    ) -> CreditDecision:
        logger.info("credit_declined", extra={"decline_code": code.value})
        return CreditDecision(
            approved=False,
            approved_amount=ZERO,
            requested_amount=request.requested_amount,
            tenor_days=request.requested_tenor_days,
            interest_rate=self._params.annual_interest_rate,
            processing_fee=ZERO,
            monthly_payment=ZERO,
            available_capacity=available_capacity,
            max_principal=ZERO,
            max_affordable_amount=ZERO,
            crb_adjustment=ZERO,
            history_adjustment=ZERO,
            affordability_score=ZERO,
            confidence_score=ZERO,
            reasoning=reasoning,
            decline_code=code,
        )


def risk_tier_for_salary(
    net_salary: Decimal,
    bands: tuple[tuple[str, Decimal], ...] = (
        ("TIER_1", Decimal("1000000")),
        ("TIER_2", Decimal("500000")),
    ),
    fallback: str = "TIER_3",
) -> str:
    """Coarse risk tier from salary bands, highest band first."""
    for tier, floor in bands:
        if net_salary >= floor:
            return tier
    return fallback
