"""Lender views -> allocation engine snapshots."""

from __future__ import annotations

from sqlalchemy.orm import Session

from bnpl_engines.allocation import LenderSnapshot, ProductTerms
from bnpl_kernel.selectors.lender_selector import LenderSelector, LenderView


def to_snapshot(lender: LenderView) -> LenderSnapshot:
    return LenderSnapshot(
        lender_id=lender.id,
        name=lender.name,
        is_active=lender.is_active,
        capital_limit=lender.capital_limit,
        capital_utilized=lender.capital_utilized,
        risk_appetite=lender.risk_appetite,
        products=tuple(
            ProductTerms(
                product_id=p.id,
                min_amount=p.min_amount,
                max_amount=p.max_amount,
                tenor_limit_days=p.tenor_limit_days,
                risk_tiers=p.risk_tiers,
                is_active=p.is_active,
            )
            for p in lender.products
        ),
    )


def load_pool(session: Session) -> list[LenderSnapshot]:
    """Fresh snapshot of every lender, ordered by id."""
    return [to_snapshot(view) for view in LenderSelector(session).pool()]
