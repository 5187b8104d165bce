"""
Module: bnpl_kernel.selectors.lender_selector
Responsibility: Read-only views of the lender pool and each lender's
    product envelopes.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - ``pool()`` re-reads capital columns from the database
      (populate_existing), so a view taken after a concurrent reservation
      reflects it.
    - Lenders are ordered by id for stable snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from bnpl_kernel.exceptions import LenderNotFoundError
from bnpl_kernel.models.lender import Lender
from bnpl_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ProductView:
    id: UUID
    name: str
    min_amount: Decimal
    max_amount: Decimal
    tenor_limit_days: int
    risk_tiers: frozenset[str]
    is_active: bool


@dataclass(frozen=True)
class LenderView:
    id: UUID
    name: str
    is_active: bool
    capital_limit: Decimal
    capital_utilized: Decimal
    risk_appetite: str
    products: tuple[ProductView, ...]

    @property
    def capital_available(self) -> Decimal:
        return self.capital_limit - self.capital_utilized


class LenderSelector(BaseSelector):

    @staticmethod
    def _to_view(lender: Lender) -> LenderView:
        return LenderView(
            id=lender.id,
            name=lender.name,
            is_active=lender.is_active,
            capital_limit=lender.capital_limit,
            capital_utilized=lender.capital_utilized,
            risk_appetite=lender.risk_appetite,
            products=tuple(
                ProductView(
                    id=p.id,
                    name=p.name,
                    min_amount=p.min_amount,
                    max_amount=p.max_amount,
                    tenor_limit_days=p.tenor_limit_days,
                    risk_tiers=frozenset(p.risk_tier_eligibility or ()),
                    is_active=p.is_active,
                )
                for p in lender.products
            ),
        )

    def pool(self) -> list[LenderView]:
        lenders = self.session.execute(
            select(Lender)
            .order_by(Lender.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return [self._to_view(l) for l in lenders]

    def get(self, lender_id: UUID) -> LenderView:
        lender = self.session.execute(
            select(Lender)
            .where(Lender.id == lender_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if lender is None:
            raise LenderNotFoundError(str(lender_id))
        return self._to_view(lender)
