"""
Config -> Engine Bridges.

Functions that convert a BnplPolicy into engine parameter objects.  They
live in bnpl_config (the producer) so that engines and the kernel never
import configuration.

Usage:
    policy = get_active_policy()
    credit = CreditEngine(build_credit_parameters(policy))
"""

from __future__ import annotations

from bnpl_config.schema import BnplPolicy
from bnpl_engines.allocation import AllocationParameters, AllocationStrategy
from bnpl_engines.credit import CreditParameters, TierTerms
from bnpl_engines.reconciliation import ChannelTolerance


def build_credit_parameters(policy: BnplPolicy) -> CreditParameters:
    credit = policy.credit
    return CreditParameters(
        monthly_rate=credit.monthly_rate,
        annual_interest_rate=credit.annual_interest_rate,
        processing_fee_rate=credit.processing_fee_rate,
        min_affordability_score=credit.min_affordability_score,
        min_tenor_days=credit.min_tenor_days,
        max_tenor_days=credit.max_tenor_days,
        days_per_month=credit.days_per_month,
        score_multiplier=credit.score_multiplier,
        crb_max_score=credit.crb_max_score,
        crb_bands=tuple((b.min_score, b.adjustment) for b in credit.crb_bands),
        crb_floor_adjustment=credit.crb_floor_adjustment,
        history_base=credit.history_base,
        history_weight=credit.history_weight,
        tiers={
            t.tier: TierTerms(t.deduction_ratio, t.max_tenor_days)
            for t in credit.tiers
        },
    )


def build_allocation_parameters(policy: BnplPolicy) -> AllocationParameters:
    return AllocationParameters(
        large_lender_threshold=policy.allocation.large_lender_threshold,
        conservative_excluded_tiers=policy.allocation.conservative_excluded_tiers,
    )


def default_allocation_strategy(policy: BnplPolicy) -> AllocationStrategy:
    return AllocationStrategy(policy.allocation.default_strategy)


def build_channel_tolerances(policy: BnplPolicy) -> dict[str, ChannelTolerance]:
    """Channel name -> tolerance, for every configured channel."""
    return {
        t.channel: ChannelTolerance(absolute=t.absolute, relative=t.relative)
        for t in policy.reconciliation.tolerances
    }
