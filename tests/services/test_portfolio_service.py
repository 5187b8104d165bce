"""
Tests for lender portfolio and pool statistics.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from bnpl_kernel.exceptions import LenderNotFoundError
from bnpl_services.portfolio_service import PortfolioService
from bnpl_services.settlement_service import Remittance, RemittanceLine


@pytest.fixture
def portfolio_service(session, policy, deterministic_clock) -> PortfolioService:
    return PortfolioService(session, policy=policy, clock=deterministic_clock)


class TestPortfolio:

    def test_funded_contract_counts(self, funded_contract, portfolio_service, seed):
        funded_contract()

        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id, as_of=date(2024, 1, 15))

        assert portfolio.lender_name == "Beta Finance"
        assert portfolio.active_contracts == 1
        assert portfolio.defaulted_contracts == 0
        assert portfolio.outstanding_balance == Decimal("202000")
        assert portfolio.capital_utilized == Decimal("200000")
        assert portfolio.capital_available == Decimal("19800000")
        assert portfolio.utilization == Decimal("0.0100")
        assert portfolio.portfolio_at_risk == Decimal("0")

    def test_unfunded_contracts_are_excluded(self, authorized_contract, portfolio_service, seed):
        authorized_contract()

        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id)

        assert portfolio.active_contracts == 0
        assert portfolio.outstanding_balance == Decimal("0")
        # capital is reserved at checkout
        assert portfolio.capital_utilized == Decimal("200000")

    def test_short_delinquency_is_not_at_risk(self, funded_contract, portfolio_service, seed):
        funded_contract()

        # first installment due 2024-01-31, 15 days late
        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id, as_of=date(2024, 2, 15))

        assert portfolio.at_risk_balance == Decimal("0")

    def test_delinquency_past_par_days_is_at_risk(self, funded_contract, portfolio_service, seed):
        funded_contract()

        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id, as_of=date(2024, 3, 15))

        assert portfolio.par_days == 30
        assert portfolio.at_risk_balance == Decimal("202000")
        assert portfolio.portfolio_at_risk == Decimal("1.0000")

    def test_par_is_share_of_outstanding(self, funded_contract, settlement_service, portfolio_service, seed):
        late = funded_contract()
        current = funded_contract()
        settlement_service.post_payroll_remittance(
            Remittance(seed.employer.id, "2024-01", "PAY-1", (RemittanceLine(current, Decimal("67333")),)),
            "rem-1",
        )

        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id, as_of=date(2024, 3, 15))

        assert portfolio.outstanding_balance == Decimal("336667")
        assert portfolio.at_risk_balance == Decimal("202000")
        assert portfolio.portfolio_at_risk == Decimal("0.6000")

    def test_defaulted_contracts_stay_in_portfolio(self, funded_contract, settlement_service,
                                                   portfolio_service, seed):
        contract_id = funded_contract()
        settlement_service.mark_defaulted(contract_id, "employee absconded")

        portfolio = portfolio_service.portfolio(seed.aggressive_lender.id)

        assert portfolio.active_contracts == 0
        assert portfolio.defaulted_contracts == 1
        assert portfolio.outstanding_balance == Decimal("202000")

    def test_unknown_lender(self, seed, portfolio_service):
        with pytest.raises(LenderNotFoundError):
            portfolio_service.portfolio(uuid4())


class TestAllocationStats:

    def test_pool_totals(self, funded_contract, portfolio_service):
        funded_contract()

        stats = portfolio_service.allocation_stats()

        assert stats.lender_count == 2
        assert stats.active_lender_count == 2
        assert stats.total_capital == Decimal("70000000")
        assert stats.total_utilized == Decimal("200000")
        assert stats.total_available == Decimal("69800000")
