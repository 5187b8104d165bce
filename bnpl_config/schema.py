"""
Configuration schema (``bnpl_config.schema``).

Frozen dataclasses mirroring ``sets/*.yaml``.  Parsed by
``bnpl_config.loader``; translated into engine parameters by
``bnpl_config.bridges``.  Amounts and rates are Decimals parsed from
strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class TierPolicy:
    tier: str
    deduction_ratio: Decimal
    max_tenor_days: int
    min_net_salary: Decimal


@dataclass(frozen=True)
class CrbBand:
    min_score: int
    adjustment: Decimal


@dataclass(frozen=True)
class CreditPolicy:
    monthly_rate: Decimal
    annual_interest_rate: Decimal
    processing_fee_rate: Decimal
    min_affordability_score: Decimal
    min_tenor_days: int
    max_tenor_days: int
    days_per_month: int
    score_multiplier: Decimal
    crb_max_score: int
    crb_bands: tuple[CrbBand, ...]
    crb_floor_adjustment: Decimal
    history_base: Decimal
    history_weight: Decimal
    default_deduction_limit_ratio: Decimal
    tiers: tuple[TierPolicy, ...]

    def tier(self, name: str) -> TierPolicy:
        for t in self.tiers:
            if t.tier == name:
                return t
        raise KeyError(f"Unknown risk tier: {name}")

    def salary_bands(self) -> tuple[tuple[str, Decimal], ...]:
        """(tier, minimum net salary), highest floor first."""
        ordered = sorted(self.tiers, key=lambda t: t.min_net_salary, reverse=True)
        return tuple((t.tier, t.min_net_salary) for t in ordered)


@dataclass(frozen=True)
class AllocationPolicy:
    default_strategy: str
    large_lender_threshold: Decimal
    conservative_excluded_tiers: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class CheckoutPolicy:
    max_order_amount: Decimal
    min_tenor_days: int
    max_tenor_days: int
    installment_period_days: int
    auth_token_ttl_seconds: int
    idempotency_ttl_hours: int


@dataclass(frozen=True)
class SettlementPolicy:
    platform_fee_share: Decimal
    idempotency_ttl_hours: int


@dataclass(frozen=True)
class ToleranceDef:
    channel: str
    absolute: Decimal
    relative: Decimal


@dataclass(frozen=True)
class ReconciliationPolicy:
    tolerances: tuple[ToleranceDef, ...]

    def tolerance_for(self, channel: str) -> ToleranceDef:
        for t in self.tolerances:
            if t.channel == channel:
                return t
        raise KeyError(f"No reconciliation tolerance for channel {channel}")


@dataclass(frozen=True)
class OutboxPolicy:
    max_attempts: int
    backoff_base_seconds: int
    max_backoff_seconds: int
    batch_size: int


@dataclass(frozen=True)
class PortfolioPolicy:
    par_days: int


@dataclass(frozen=True)
class BnplPolicy:
    """The whole runtime policy.  ``checksum`` identifies the source."""

    policy_id: str
    version: int
    currency: str
    credit: CreditPolicy
    allocation: AllocationPolicy
    checkout: CheckoutPolicy
    settlement: SettlementPolicy
    reconciliation: ReconciliationPolicy
    outbox: OutboxPolicy
    portfolio: PortfolioPolicy
    checksum: str = ""
