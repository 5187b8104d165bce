"""
bnpl_engines.allocation -- Multi-lender capital allocation engine.

Responsibility:
    Given an approved amount, tenor and risk tier, pick exactly one lender
    from a pool snapshot, or report that none is eligible.  Strategies:
    ROUND_ROBIN, RISK_WEIGHTED, EMPLOYER_EXCLUSIVE, PRIORITY.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Works on frozen ``LenderSnapshot`` values built by the checkout service;
    never touches ORM objects and never mutates capital.  Reserving capital
    is ``LenderCapitalService.reserve``'s job.

Invariants enforced:
    - The selected lender always passes ``ineligibility_reason`` (None).
    - Ties are broken by the lexicographically smallest lender id, so a
      replayed request with the same pool picks the same lender.
    - No eligible lender -> ``None`` (a decline, not an error).

Audit relevance:
    ``LenderAllocation.reason`` is persisted on the contract.  Invocations
    are traced via ``@traced_engine``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID

from bnpl_engines.tracer import traced_engine
from bnpl_kernel.domain.amounts import ZERO, format_ugx, round_ratio
from bnpl_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

_HUNDRED = Decimal("100")


class AllocationStrategy(str, Enum):
    ROUND_ROBIN = "ROUND_ROBIN"
    RISK_WEIGHTED = "RISK_WEIGHTED"
    EMPLOYER_EXCLUSIVE = "EMPLOYER_EXCLUSIVE"
    PRIORITY = "PRIORITY"


@dataclass(frozen=True)
class ProductTerms:
    """Fundable envelope of one lender product."""

    product_id: UUID
    min_amount: Decimal
    max_amount: Decimal
    tenor_limit_days: int
    risk_tiers: frozenset[str]
    is_active: bool = True

    def covers(self, amount: Decimal, tenor_days: int, risk_tier: str) -> bool:
        return (
            self.is_active
            and self.min_amount <= amount <= self.max_amount
            and self.tenor_limit_days >= tenor_days
            and risk_tier in self.risk_tiers
        )


@dataclass(frozen=True)
class LenderSnapshot:
    """Point-in-time view of a lender and its products."""

    lender_id: UUID
    name: str
    is_active: bool
    capital_limit: Decimal
    capital_utilized: Decimal
    risk_appetite: str
    products: tuple[ProductTerms, ...] = ()

    @property
    def capital_available(self) -> Decimal:
        return self.capital_limit - self.capital_utilized

    @property
    def utilization(self) -> Decimal:
        if self.capital_limit <= ZERO:
            return Decimal("1")
        return self.capital_utilized / self.capital_limit


@dataclass(frozen=True)
class AllocationRequest:
    amount: Decimal
    tenor_days: int
    risk_tier: str
    strategy: AllocationStrategy = AllocationStrategy.RISK_WEIGHTED
    exclusive_lender_id: UUID | None = None
    excluded_lender_ids: frozenset[UUID] = field(default_factory=frozenset)


@dataclass(frozen=True)
class LenderAllocation:
    """The engine's answer: who funds, how much, and why."""

    lender_id: UUID
    lender_name: str
    assigned_amount: Decimal
    strategy_used: AllocationStrategy
    reason: str
    score: Decimal | None = None


@dataclass(frozen=True)
class AllocationParameters:
    large_lender_threshold: Decimal = Decimal("100000000")
    conservative_excluded_tiers: frozenset[str] = frozenset({"TIER_3"})


@dataclass(frozen=True)
class PoolStats:
    """Capital position of a lender pool."""

    lender_count: int
    active_lender_count: int
    total_capital: Decimal
    total_utilized: Decimal
    total_available: Decimal
    utilization: Decimal
    by_lender: tuple[tuple[UUID, Decimal], ...]


def _id_key(lender: LenderSnapshot) -> str:
    return str(lender.lender_id)


class LenderAllocationEngine:
    """
    Pure lender selection.

    Contract:
        ``allocate`` returns a LenderAllocation for an eligible lender or
        None.  It never raises for business reasons.
    Non-goals:
        Capital reservation and retry after a lost reservation race belong
        to the checkout service, which calls ``allocate`` again with the
        loser in ``excluded_lender_ids``.
    """

    def __init__(self, parameters: AllocationParameters | None = None):
        self._params = parameters or AllocationParameters()

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def ineligibility_reason(
        self, lender: LenderSnapshot, request: AllocationRequest,
    ) -> str | None:
        """None if ``lender`` may fund ``request``, else a short reason."""
        if lender.lender_id in request.excluded_lender_ids:
            return "excluded"
        if not lender.is_active:
            return "inactive"
        if lender.capital_available < request.amount:
            return "insufficient_capital"
        if (
            lender.risk_appetite == "CONSERVATIVE"
            and request.risk_tier in self._params.conservative_excluded_tiers
        ):
            return "risk_appetite"
        if not any(
            p.covers(request.amount, request.tenor_days, request.risk_tier)
            for p in lender.products
        ):
            return "no_matching_product"
        return None

    def eligible_lenders(
        self, request: AllocationRequest, pool: Sequence[LenderSnapshot],
    ) -> list[LenderSnapshot]:
        """Eligible lenders ordered by id."""
        eligible = [l for l in pool if self.ineligibility_reason(l, request) is None]
        return sorted(eligible, key=_id_key)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @traced_engine("lender_allocation", "1.0", fingerprint_fields=("request", "pool"))
    def allocate(
        self, request: AllocationRequest, pool: Sequence[LenderSnapshot],
    ) -> LenderAllocation | None:
        eligible = self.eligible_lenders(request, pool)
        if not eligible:
            logger.info("allocation_no_eligible_lender", extra={
                "amount": str(request.amount),
                "tenor_days": request.tenor_days,
                "risk_tier": request.risk_tier,
                "pool_size": len(pool),
            })
            return None

        match request.strategy:
            case AllocationStrategy.ROUND_ROBIN:
                result = self._round_robin(request, eligible)
            case AllocationStrategy.RISK_WEIGHTED:
                result = self._risk_weighted(request, eligible)
            case AllocationStrategy.EMPLOYER_EXCLUSIVE:
                result = self._employer_exclusive(request, eligible)
            case AllocationStrategy.PRIORITY:
                result = self._priority(request, eligible)
            case _:
                raise ValueError(f"Unknown allocation strategy: {request.strategy}")

        logger.info("lender_allocated", extra={
            "lender_id": str(result.lender_id),
            "strategy": result.strategy_used.value,
            "amount": str(result.assigned_amount),
        })
        return result

    def _round_robin(
        self,
        request: AllocationRequest,
        eligible: list[LenderSnapshot],
        note: str = "",
    ) -> LenderAllocation:
        lender = eligible[0]
        return LenderAllocation(
            lender_id=lender.lender_id,
            lender_name=lender.name,
            assigned_amount=request.amount,
            strategy_used=AllocationStrategy.ROUND_ROBIN,
            reason=(
                f"{note}Round-robin: {lender.name} is first of "
                f"{len(eligible)} eligible lender(s) by id"
            ),
        )

    def _risk_weighted(
        self, request: AllocationRequest, eligible: list[LenderSnapshot],
    ) -> LenderAllocation:
        scored = [(self.risk_score(l, request.risk_tier), l) for l in eligible]
        # Highest score; eligible is id-ordered so max keeps the smallest id on ties
        best_score, best = max(scored, key=lambda pair: pair[0])
        return LenderAllocation(
            lender_id=best.lender_id,
            lender_name=best.name,
            assigned_amount=request.amount,
            strategy_used=AllocationStrategy.RISK_WEIGHTED,
            reason=(
                f"Risk-weighted ({request.risk_tier}): {best.name} scored "
                f"{round_ratio(best_score)} at "
                f"{round_ratio(best.utilization * _HUNDRED, 1)}% utilization"
            ),
            score=best_score,
        )

    def _employer_exclusive(
        self, request: AllocationRequest, eligible: list[LenderSnapshot],
    ) -> LenderAllocation:
        if request.exclusive_lender_id is not None:
            for lender in eligible:
                if lender.lender_id == request.exclusive_lender_id:
                    return LenderAllocation(
                        lender_id=lender.lender_id,
                        lender_name=lender.name,
                        assigned_amount=request.amount,
                        strategy_used=AllocationStrategy.EMPLOYER_EXCLUSIVE,
                        reason=f"Employer exclusive: {lender.name} funds this employer",
                    )
            note = "Exclusive lender not eligible; "
        else:
            note = "No exclusive lender for employer; "
        return self._round_robin(request, eligible, note=note)

    def _priority(
        self, request: AllocationRequest, eligible: list[LenderSnapshot],
    ) -> LenderAllocation:
        best = min(eligible, key=lambda l: l.utilization)
        return LenderAllocation(
            lender_id=best.lender_id,
            lender_name=best.name,
            assigned_amount=request.amount,
            strategy_used=AllocationStrategy.PRIORITY,
            reason=(
                f"Priority: {best.name} has the lowest utilization "
                f"({round_ratio(best.utilization * _HUNDRED, 1)}%)"
            ),
        )

    def risk_score(self, lender: LenderSnapshot, risk_tier: str) -> Decimal:
        """
        Tier-specific preference score.

        TIER_1 favors highly utilized, aggressive lenders; TIER_2 weighs
        utilization and moderate appetite; TIER_3 favors large lenders and
        the most conservative appetite still eligible.
        """
        appetite = lender.risk_appetite
        match risk_tier:
            case "TIER_1":
                score = lender.utilization * _HUNDRED
                if appetite == "AGGRESSIVE":
                    score += Decimal("50")
            case "TIER_2":
                score = lender.utilization * Decimal("50")
                if appetite == "MODERATE":
                    score += Decimal("50")
            case _:
                score = ZERO
                if lender.capital_limit > self._params.large_lender_threshold:
                    score += Decimal("50")
                if appetite == "CONSERVATIVE":
                    score += Decimal("50")
                elif appetite == "MODERATE":
                    score += Decimal("25")
        return score

    # ------------------------------------------------------------------
    # Pool statistics
    # ------------------------------------------------------------------

    @traced_engine("lender_pool_stats", "1.0", fingerprint_fields=("pool",))
    def pool_stats(self, pool: Sequence[LenderSnapshot]) -> PoolStats:
        total_capital = sum((l.capital_limit for l in pool), ZERO)
        total_utilized = sum((l.capital_utilized for l in pool), ZERO)
        utilization = total_utilized / total_capital if total_capital > ZERO else ZERO
        return PoolStats(
            lender_count=len(pool),
            active_lender_count=sum(1 for l in pool if l.is_active),
            total_capital=total_capital,
            total_utilized=total_utilized,
            total_available=total_capital - total_utilized,
            utilization=round_ratio(utilization, 4),
            by_lender=tuple(
                (l.lender_id, round_ratio(l.utilization, 4))
                for l in sorted(pool, key=_id_key)
            ),
        )


def describe_decline(request: AllocationRequest) -> str:
    return (
        f"No eligible lender for {format_ugx(request.amount)} over "
        f"{request.tenor_days} days ({request.risk_tier})"
    )
