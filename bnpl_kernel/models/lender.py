"""
Lenders and their fundable product envelopes.

Invariant: ``0 <= capital_utilized <= capital_limit``.  The CHECK constraint
backs up the conditional UPDATE in ``LenderCapitalService``; nothing else
writes ``capital_utilized``.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bnpl_kernel.db.base import TrackedBase, UUIDString


class RiskAppetite(str, Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATE = "MODERATE"
    AGGRESSIVE = "AGGRESSIVE"


class Lender(TrackedBase):
    """Independent capital provider."""

    __tablename__ = "lenders"

    __table_args__ = (
        CheckConstraint(
            "capital_utilized >= 0 AND capital_utilized <= capital_limit",
            name="ck_lender_capital_bounds",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    capital_limit: Mapped[Decimal] = mapped_column(nullable=False)
    capital_utilized: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    risk_appetite: Mapped[RiskAppetite] = mapped_column(String(20), nullable=False)

    products: Mapped[list["LenderProduct"]] = relationship(
        back_populates="lender",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LenderProduct.name",
    )

    @property
    def capital_available(self) -> Decimal:
        return self.capital_limit - self.capital_utilized

    def __repr__(self) -> str:
        return f"<Lender {self.name} {self.capital_utilized}/{self.capital_limit}>"


class LenderProduct(TrackedBase):
    """Amount, tenor and risk-tier envelope a lender will fund."""

    __tablename__ = "lender_products"

    __table_args__ = (
        Index("idx_product_lender", "lender_id"),
    )

    lender_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("lenders.id"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(nullable=False)
    max_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tenor_limit_days: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_tier_eligibility: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    lender: Mapped[Lender] = relationship(back_populates="products")
