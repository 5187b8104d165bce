"""
Tests for installment schedule construction.
"""

from datetime import date
from decimal import Decimal

import pytest

from bnpl_engines.schedule import build_schedule, installment_count, payroll_cycle_for


class TestInstallmentCount:

    @pytest.mark.parametrize("tenor,count", [
        (30, 1),
        (31, 2),
        (60, 2),
        (90, 3),
        (91, 4),
        (180, 6),
        (1, 1),
    ])
    def test_ceil_of_tenor_over_period(self, tenor, count):
        assert installment_count(tenor) == count

    def test_custom_period(self):
        assert installment_count(28, period_days=14) == 2

    @pytest.mark.parametrize("tenor,period", [(0, 30), (-30, 30), (90, 0)])
    def test_non_positive_inputs_raise(self, tenor, period):
        with pytest.raises(ValueError):
            installment_count(tenor, period)


class TestBuildSchedule:

    def test_even_split(self):
        schedule = build_schedule(Decimal("303000"), 90, date(2024, 1, 1))

        assert schedule.count == 3
        assert schedule.installment_amount == Decimal("101000")
        assert [l.amount_due for l in schedule.lines] == [Decimal("101000")] * 3

    def test_remainder_goes_to_last_installment(self):
        schedule = build_schedule(Decimal("100001"), 90, date(2024, 1, 1))

        assert [l.amount_due for l in schedule.lines] == [
            Decimal("33333"), Decimal("33333"), Decimal("33335"),
        ]
        assert sum(l.amount_due for l in schedule.lines) == Decimal("100001")

    def test_due_dates_are_one_period_apart(self):
        schedule = build_schedule(Decimal("90000"), 90, date(2024, 1, 1))

        assert [l.due_date for l in schedule.lines] == [
            date(2024, 1, 31), date(2024, 3, 1), date(2024, 3, 31),
        ]
        assert [l.number for l in schedule.lines] == [1, 2, 3]

    def test_lines_carry_payroll_cycle(self):
        schedule = build_schedule(Decimal("90000"), 90, date(2024, 1, 1))

        assert [l.payroll_cycle for l in schedule.lines] == ["2024-01", "2024-03", "2024-03"]

    def test_single_installment(self):
        schedule = build_schedule(Decimal("50500"), 30, date(2024, 6, 15))

        assert schedule.count == 1
        assert schedule.lines[0].amount_due == Decimal("50500")

    def test_non_positive_total_raises(self):
        with pytest.raises(ValueError, match="total_payable"):
            build_schedule(Decimal("0"), 90, date(2024, 1, 1))


class TestPayrollCycle:

    def test_zero_padded_month(self):
        assert payroll_cycle_for(date(2024, 3, 31)) == "2024-03"

    def test_december(self):
        assert payroll_cycle_for(date(2023, 12, 1)) == "2023-12"
