"""
Parties: employers, their employees (the borrowers) and merchants.

Employees are looked up by phone at checkout.  Risk tier and deduction limit
are maintained outside the core (bulk upload, HR integration) and read here
as facts.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from bnpl_kernel.db.base import TrackedBase, UUIDString


class RiskTier(str, Enum):
    """Salary/risk band driving deduction ratio and maximum tenor."""

    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"
    TIER_3 = "TIER_3"


class Employer(TrackedBase):
    """
    Employer running the payroll that repays contracts.

    ``exclusive_lender_id`` is the employer -> lender exclusivity mapping
    consulted by the EMPLOYER_EXCLUSIVE allocation strategy.
    """

    __tablename__ = "employers"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclusive_lender_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("lenders.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Employer {self.name}>"


class Employee(TrackedBase):
    """Salaried customer of an employer."""

    __tablename__ = "employees"

    __table_args__ = (
        Index("idx_employee_employer", "employer_id"),
    )

    employer_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("employers.id"),
        nullable=False,
    )
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    national_id: Mapped[str] = mapped_column(String(64), nullable=False)
    net_salary: Mapped[Decimal] = mapped_column(nullable=False)
    risk_tier: Mapped[RiskTier] = mapped_column(String(10), nullable=False)

    # Maximum principal the employer allows; None defers to policy default
    deduction_limit: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Deductions already taken by payroll outside this system
    external_monthly_deductions: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Employee {self.phone} {self.risk_tier}>"


class Merchant(TrackedBase):
    __tablename__ = "merchants"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Merchant {self.name}>"
