"""
Tests for the multi-lender allocation engine.

Covers:
- Eligibility filters (exclusion, activity, capital, appetite, products)
- Each strategy's choice and its deterministic tie-break
- Employer-exclusive fallback to round-robin
- Pool statistics
"""

from decimal import Decimal
from uuid import UUID

import pytest

from bnpl_engines.allocation import (
    AllocationRequest,
    AllocationStrategy,
    LenderAllocationEngine,
    LenderSnapshot,
    ProductTerms,
    describe_decline,
)

ALL_TIERS = frozenset({"TIER_1", "TIER_2", "TIER_3"})

LENDER_A = UUID("00000000-0000-0000-0000-00000000000a")
LENDER_B = UUID("00000000-0000-0000-0000-00000000000b")
LENDER_C = UUID("00000000-0000-0000-0000-00000000000c")


def _product(
    min_amount: str = "10000",
    max_amount: str = "5000000",
    tenor: int = 180,
    tiers: frozenset[str] = ALL_TIERS,
    is_active: bool = True,
) -> ProductTerms:
    return ProductTerms(
        product_id=UUID(int=1),
        min_amount=Decimal(min_amount),
        max_amount=Decimal(max_amount),
        tenor_limit_days=tenor,
        risk_tiers=tiers,
        is_active=is_active,
    )


def _lender(
    lender_id: UUID,
    limit: str = "10000000",
    utilized: str = "0",
    appetite: str = "MODERATE",
    is_active: bool = True,
    products: tuple[ProductTerms, ...] | None = None,
) -> LenderSnapshot:
    return LenderSnapshot(
        lender_id=lender_id,
        name=f"Lender {str(lender_id)[-1].upper()}",
        is_active=is_active,
        capital_limit=Decimal(limit),
        capital_utilized=Decimal(utilized),
        risk_appetite=appetite,
        products=(_product(),) if products is None else products,
    )


def _request(
    amount: str = "200000",
    tier: str = "TIER_1",
    strategy: AllocationStrategy = AllocationStrategy.RISK_WEIGHTED,
    **kwargs,
) -> AllocationRequest:
    return AllocationRequest(
        amount=Decimal(amount), tenor_days=90, risk_tier=tier, strategy=strategy, **kwargs,
    )


class TestEligibility:

    def setup_method(self):
        self.engine = LenderAllocationEngine()

    def test_insufficient_capital_returns_none(self):
        pool = [_lender(LENDER_A, limit="100000", utilized="95000")]

        assert self.engine.allocate(request=_request(amount="10000"), pool=pool) is None

    def test_capital_exactly_available_is_eligible(self):
        lender = _lender(LENDER_A, limit="100000", utilized="90000")

        assert self.engine.ineligibility_reason(lender, _request(amount="10000")) is None

    @pytest.mark.parametrize("lender,request_kwargs,reason", [
        (_lender(LENDER_A), {"excluded_lender_ids": frozenset({LENDER_A})}, "excluded"),
        (_lender(LENDER_A, is_active=False), {}, "inactive"),
        (_lender(LENDER_A, limit="100000"), {}, "insufficient_capital"),
        (_lender(LENDER_A, appetite="CONSERVATIVE"), {"tier": "TIER_3"}, "risk_appetite"),
        (_lender(LENDER_A, products=()), {}, "no_matching_product"),
        (_lender(LENDER_A, products=(_product(is_active=False),)), {}, "no_matching_product"),
        (_lender(LENDER_A, products=(_product(max_amount="100000"),)), {}, "no_matching_product"),
        (_lender(LENDER_A, products=(_product(tenor=60),)), {}, "no_matching_product"),
        (_lender(LENDER_A, products=(_product(tiers=frozenset({"TIER_2"})),)), {}, "no_matching_product"),
    ])
    def test_ineligibility_reasons(self, lender, request_kwargs, reason):
        assert self.engine.ineligibility_reason(lender, _request(**request_kwargs)) == reason

    def test_conservative_lender_serves_tier_one(self):
        lender = _lender(LENDER_A, appetite="CONSERVATIVE")

        assert self.engine.ineligibility_reason(lender, _request(tier="TIER_1")) is None

    def test_eligible_lenders_are_ordered_by_id(self):
        pool = [_lender(LENDER_C), _lender(LENDER_A), _lender(LENDER_B, is_active=False)]

        eligible = self.engine.eligible_lenders(_request(), pool)

        assert [l.lender_id for l in eligible] == [LENDER_A, LENDER_C]

    def test_no_eligible_lender_is_logged(self, captured_logs):
        self.engine.allocate(request=_request(), pool=[])

        assert any(r["message"] == "allocation_no_eligible_lender" for r in captured_logs())

    def test_decline_description(self):
        assert describe_decline(_request(amount="1250000")) == (
            "No eligible lender for UGX 1,250,000 over 90 days (TIER_1)"
        )


class TestStrategies:

    def setup_method(self):
        self.engine = LenderAllocationEngine()

    def test_round_robin_picks_smallest_id(self):
        pool = [_lender(LENDER_B), _lender(LENDER_A)]

        result = self.engine.allocate(
            request=_request(strategy=AllocationStrategy.ROUND_ROBIN), pool=pool,
        )

        assert result.lender_id == LENDER_A
        assert result.strategy_used == AllocationStrategy.ROUND_ROBIN
        assert result.assigned_amount == Decimal("200000")

    def test_risk_weighted_tier_one_prefers_aggressive(self):
        pool = [_lender(LENDER_A, appetite="MODERATE"), _lender(LENDER_B, appetite="AGGRESSIVE")]

        result = self.engine.allocate(request=_request(tier="TIER_1"), pool=pool)

        assert result.lender_id == LENDER_B
        assert result.score == Decimal("50")

    def test_risk_weighted_tier_one_rewards_utilization(self):
        pool = [
            _lender(LENDER_A, appetite="MODERATE", utilized="6000000"),
            _lender(LENDER_B, appetite="AGGRESSIVE"),
        ]

        result = self.engine.allocate(request=_request(tier="TIER_1"), pool=pool)

        # 60% utilization scores 60 against the aggressive lender's 50
        assert result.lender_id == LENDER_A

    def test_risk_weighted_tier_two_prefers_moderate(self):
        pool = [_lender(LENDER_A, appetite="AGGRESSIVE"), _lender(LENDER_B, appetite="MODERATE")]

        result = self.engine.allocate(request=_request(tier="TIER_2"), pool=pool)

        assert result.lender_id == LENDER_B

    def test_risk_weighted_tier_three_prefers_large_lenders(self):
        pool = [
            _lender(LENDER_A, appetite="MODERATE"),
            _lender(LENDER_B, appetite="AGGRESSIVE", limit="200000000"),
        ]

        result = self.engine.allocate(request=_request(tier="TIER_3"), pool=pool)

        assert result.lender_id == LENDER_B
        assert result.score == Decimal("50")

    def test_risk_weighted_tie_keeps_smallest_id(self):
        pool = [_lender(LENDER_C), _lender(LENDER_A), _lender(LENDER_B)]

        result = self.engine.allocate(request=_request(), pool=pool)

        assert result.lender_id == LENDER_A

    def test_priority_picks_lowest_utilization(self):
        pool = [
            _lender(LENDER_A, utilized="5000000"),
            _lender(LENDER_B, utilized="1000000"),
            _lender(LENDER_C, utilized="3000000"),
        ]

        result = self.engine.allocate(request=_request(strategy=AllocationStrategy.PRIORITY), pool=pool)

        assert result.lender_id == LENDER_B
        assert "lowest utilization" in result.reason

    def test_employer_exclusive_uses_designated_lender(self):
        pool = [_lender(LENDER_A), _lender(LENDER_B)]

        result = self.engine.allocate(
            request=_request(strategy=AllocationStrategy.EMPLOYER_EXCLUSIVE, exclusive_lender_id=LENDER_B),
            pool=pool,
        )

        assert result.lender_id == LENDER_B
        assert result.strategy_used == AllocationStrategy.EMPLOYER_EXCLUSIVE

    def test_employer_exclusive_falls_back_when_lender_ineligible(self):
        pool = [_lender(LENDER_A), _lender(LENDER_B, is_active=False)]

        result = self.engine.allocate(
            request=_request(strategy=AllocationStrategy.EMPLOYER_EXCLUSIVE, exclusive_lender_id=LENDER_B),
            pool=pool,
        )

        assert result.lender_id == LENDER_A
        assert result.strategy_used == AllocationStrategy.ROUND_ROBIN
        assert result.reason.startswith("Exclusive lender not eligible")

    def test_employer_exclusive_without_designation_falls_back(self):
        result = self.engine.allocate(
            request=_request(strategy=AllocationStrategy.EMPLOYER_EXCLUSIVE),
            pool=[_lender(LENDER_B), _lender(LENDER_A)],
        )

        assert result.lender_id == LENDER_A
        assert result.reason.startswith("No exclusive lender")

    def test_allocation_is_deterministic(self):
        pool = [_lender(LENDER_A), _lender(LENDER_B, appetite="AGGRESSIVE")]

        first = self.engine.allocate(request=_request(), pool=pool)
        second = self.engine.allocate(request=_request(), pool=list(reversed(pool)))

        assert first == second


class TestPoolStats:

    def test_totals_and_utilization(self):
        pool = [
            _lender(LENDER_B, limit="20000000", utilized="5000000"),
            _lender(LENDER_A, limit="30000000", utilized="0", is_active=False),
        ]

        stats = LenderAllocationEngine().pool_stats(pool=pool)

        assert stats.lender_count == 2
        assert stats.active_lender_count == 1
        assert stats.total_capital == Decimal("50000000")
        assert stats.total_available == Decimal("45000000")
        assert stats.utilization == Decimal("0.1000")
        assert stats.by_lender == (
            (LENDER_A, Decimal("0.0000")),
            (LENDER_B, Decimal("0.2500")),
        )

    def test_empty_pool(self):
        stats = LenderAllocationEngine().pool_stats(pool=[])

        assert stats.lender_count == 0
        assert stats.utilization == Decimal("0")
