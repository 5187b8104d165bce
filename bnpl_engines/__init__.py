"""
Module: bnpl_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines: credit
    decision, lender allocation, installment schedule and variance
    classification.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import bnpl_kernel.domain and bnpl_kernel.logging_config.
    MUST NOT import bnpl_services, bnpl_config or outer layers.

Invariants enforced:
    - Purity: engines never read the clock; dates are parameters.
    - Decimal-only arithmetic for amounts and rates.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``, emitting
    BNPL_ENGINE_TRACE records with engine name, version, input fingerprint
    and duration.
"""

from bnpl_engines.allocation import (
    AllocationParameters,
    AllocationRequest,
    AllocationStrategy,
    LenderAllocation,
    LenderAllocationEngine,
    LenderSnapshot,
    PoolStats,
    ProductTerms,
)
from bnpl_engines.credit import (
    CreditDecision,
    CreditEngine,
    CreditHistory,
    CreditParameters,
    CreditRequest,
    DeclineCode,
    TierTerms,
    risk_tier_for_salary,
)
from bnpl_engines.reconciliation import (
    ChannelTolerance,
    MatchStatus,
    VarianceResult,
    classify_variance,
)
from bnpl_engines.schedule import (
    InstallmentLine,
    InstallmentSchedule,
    build_schedule,
    installment_count,
    payroll_cycle_for,
)
from bnpl_engines.tracer import traced_engine

__all__ = [
    "AllocationParameters",
    "AllocationRequest",
    "AllocationStrategy",
    "ChannelTolerance",
    "CreditDecision",
    "CreditEngine",
    "CreditHistory",
    "CreditParameters",
    "CreditRequest",
    "DeclineCode",
    "InstallmentLine",
    "InstallmentSchedule",
    "LenderAllocation",
    "LenderAllocationEngine",
    "LenderSnapshot",
    "MatchStatus",
    "PoolStats",
    "ProductTerms",
    "TierTerms",
    "VarianceResult",
    "build_schedule",
    "classify_variance",
    "installment_count",
    "payroll_cycle_for",
    "risk_tier_for_salary",
    "traced_engine",
]
