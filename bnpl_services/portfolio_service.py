"""
bnpl_services.portfolio_service -- Lender portfolio and pool statistics.

Read-only.  A lender's portfolio covers its funded, not yet finished
contracts (DISBURSED, IN_REPAYMENT, DISPUTED) plus DEFAULTED ones, which
still carry an outstanding balance.  PAR is the share of that outstanding
balance held by contracts whose oldest unpaid installment is more than
``par_days`` past due.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from bnpl_config import BnplPolicy, get_active_policy
from bnpl_config.bridges import build_allocation_parameters
from bnpl_engines.allocation import LenderAllocationEngine, PoolStats
from bnpl_kernel.domain.amounts import ZERO, round_ratio
from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.domain.lifecycle import ContractState
from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.selectors.contract_selector import ContractSelector
from bnpl_kernel.selectors.lender_selector import LenderSelector
from bnpl_kernel.services.base import BaseService
from bnpl_services.lender_pool import load_pool

logger = get_logger("services.portfolio")

PORTFOLIO_STATES = frozenset({
    ContractState.DISBURSED,
    ContractState.IN_REPAYMENT,
    ContractState.DISPUTED,
    ContractState.DEFAULTED,
})


@dataclass(frozen=True)
class LenderPortfolio:
    lender_id: UUID
    lender_name: str
    as_of: date
    active_contracts: int
    defaulted_contracts: int
    outstanding_balance: Decimal
    capital_limit: Decimal
    capital_utilized: Decimal
    capital_available: Decimal
    utilization: Decimal
    par_days: int
    at_risk_balance: Decimal
    portfolio_at_risk: Decimal


class PortfolioService(BaseService):

    def __init__(
        self,
        session: Session,
        policy: BnplPolicy | None = None,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        policy = policy or get_active_policy()
        self._par_days = policy.portfolio.par_days
        self._allocation = LenderAllocationEngine(build_allocation_parameters(policy))
        self._clock = clock or SystemClock()

    def portfolio(self, lender_id: UUID, as_of: date | None = None) -> LenderPortfolio:
        as_of = as_of or self._clock.today()
        lender = LenderSelector(self.session).get(lender_id)
        contracts = ContractSelector(self.session).list_for_lender(lender_id, PORTFOLIO_STATES)

        outstanding = sum((c.outstanding for c in contracts), ZERO)
        at_risk = sum(
            (c.outstanding for c in contracts if c.days_past_due(as_of) > self._par_days),
            ZERO,
        )
        par = at_risk / outstanding if outstanding > ZERO else ZERO
        utilization = (
            lender.capital_utilized / lender.capital_limit
            if lender.capital_limit > ZERO else ZERO
        )

        result = LenderPortfolio(
            lender_id=lender.id,
            lender_name=lender.name,
            as_of=as_of,
            active_contracts=sum(1 for c in contracts if c.state != ContractState.DEFAULTED),
            defaulted_contracts=sum(1 for c in contracts if c.state == ContractState.DEFAULTED),
            outstanding_balance=outstanding,
            capital_limit=lender.capital_limit,
            capital_utilized=lender.capital_utilized,
            capital_available=lender.capital_available,
            utilization=round_ratio(utilization, 4),
            par_days=self._par_days,
            at_risk_balance=at_risk,
            portfolio_at_risk=round_ratio(par, 4),
        )
        logger.debug("lender_portfolio_computed", extra={
            "lender_id": str(lender_id),
            "outstanding": str(outstanding),
            "portfolio_at_risk": str(result.portfolio_at_risk),
        })
        return result

    def allocation_stats(self) -> PoolStats:
        return self._allocation.pool_stats(pool=load_pool(self.session))
