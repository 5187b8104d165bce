"""
bnpl_engines.reconciliation -- Variance classification for ledger channels.

Responsibility:
    Compare an internally computed expected amount with an externally
    reported actual amount and classify the result as MATCHED, VARIANCE or
    MISSING under a per-channel tolerance.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by bnpl_services.reconciliation_service, which gathers the
    amounts and persists one ReconciliationRecord per result.

Invariants enforced:
    - variance == expected - actual, always.
    - MISSING takes precedence: actual == 0 while expected > 0.
    - MATCHED iff |variance| <= max(absolute, relative * |expected|); a
      zero tolerance means exact equality.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from bnpl_engines.tracer import traced_engine
from bnpl_kernel.domain.amounts import ZERO


class MatchStatus(str, Enum):
    MATCHED = "MATCHED"
    VARIANCE = "VARIANCE"
    MISSING = "MISSING"


@dataclass(frozen=True)
class ChannelTolerance:
    """Allowed deviation: an absolute floor and a relative share of expected."""

    absolute: Decimal = ZERO
    relative: Decimal = ZERO

    def __post_init__(self) -> None:
        if self.absolute < ZERO or self.relative < ZERO:
            raise ValueError("Tolerances must be non-negative")

    def allowed(self, expected: Decimal) -> Decimal:
        return max(self.absolute, self.relative * abs(expected))


EXACT = ChannelTolerance()


@dataclass(frozen=True)
class VarianceResult:
    expected: Decimal
    actual: Decimal
    variance: Decimal
    tolerance_applied: Decimal
    status: MatchStatus

    @property
    def is_matched(self) -> bool:
        return self.status == MatchStatus.MATCHED


@traced_engine("variance_classifier", "1.0",
               fingerprint_fields=("expected", "actual", "tolerance"))
def classify_variance(
    expected: Decimal,
    actual: Decimal,
    tolerance: ChannelTolerance = EXACT,
) -> VarianceResult:
    variance = expected - actual
    allowed = tolerance.allowed(expected)

    if actual == ZERO and expected > ZERO:
        status = MatchStatus.MISSING
    elif abs(variance) <= allowed:
        status = MatchStatus.MATCHED
    else:
        status = MatchStatus.VARIANCE

    return VarianceResult(
        expected=expected,
        actual=actual,
        variance=variance,
        tolerance_applied=allowed,
        status=status,
    )
