"""
bnpl_engines.schedule -- Installment schedule construction.

Splits a contract's total payable into equal whole-UGX installments spaced
one installment period apart; the last installment absorbs the remainder
so that the schedule always sums to the total exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from bnpl_engines.tracer import traced_engine
from bnpl_kernel.domain.amounts import ZERO, floor_amount


@dataclass(frozen=True)
class InstallmentLine:
    number: int
    due_date: date
    amount_due: Decimal

    @property
    def payroll_cycle(self) -> str:
        return payroll_cycle_for(self.due_date)


@dataclass(frozen=True)
class InstallmentSchedule:
    total_payable: Decimal
    installment_amount: Decimal
    lines: tuple[InstallmentLine, ...]

    @property
    def count(self) -> int:
        return len(self.lines)


def installment_count(tenor_days: int, period_days: int = 30) -> int:
    """Number of installments: ceil(tenor / period), at least one."""
    if tenor_days <= 0 or period_days <= 0:
        raise ValueError(
            f"tenor_days and period_days must be positive, got {tenor_days}, {period_days}"
        )
    return max(1, -(-tenor_days // period_days))


def payroll_cycle_for(due_date: date) -> str:
    """Payroll cycle key (``YYYY-MM``) a due date falls in."""
    return f"{due_date.year:04d}-{due_date.month:02d}"


@traced_engine("installment_schedule", "1.0",
               fingerprint_fields=("total_payable", "tenor_days", "start_date"))
def build_schedule(
    total_payable: Decimal,
    tenor_days: int,
    start_date: date,
    period_days: int = 30,
) -> InstallmentSchedule:
    """
    Equal installments with the remainder on the last one.

    Raises:
        ValueError: non-positive total, tenor or period.
    """
    if total_payable <= ZERO:
        raise ValueError(f"total_payable must be positive, got {total_payable}")
    count = installment_count(tenor_days, period_days)
    base = floor_amount(total_payable / count)
    last = total_payable - base * (count - 1)

    lines = tuple(
        InstallmentLine(
            number=n,
            due_date=start_date + timedelta(days=period_days * n),
            amount_due=last if n == count else base,
        )
        for n in range(1, count + 1)
    )
    return InstallmentSchedule(
        total_payable=total_payable,
        installment_amount=base,
        lines=lines,
    )
