"""
Module: bnpl_kernel.repositories
Responsibility: Repository interfaces for employees, employers, merchants
    and contracts: ``get``, ``create``, ``update``, ``list_by``, plus
    the few domain lookups the orchestration layer needs.
Architecture position: Kernel.  Imports models and exceptions.  Like the
    services, repositories flush and never commit.

Invariants enforced:
    - ``require`` raises a typed NotFoundError subclass, never returns None.
    - ``get_for_update`` takes a row lock on PostgreSQL (SELECT ... FOR
      UPDATE); on SQLite the BEGIN IMMEDIATE transaction already serializes
      writers.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bnpl_kernel.db.base import Base
from bnpl_kernel.domain.lifecycle import ACTIVE_STATES
from bnpl_kernel.exceptions import (
    ContractNotFoundError,
    NotFoundError,
    PartyNotFoundError,
)
from bnpl_kernel.models.contract import Contract, Installment, InstallmentStatus
from bnpl_kernel.models.party import Employee, Employer, Merchant

ModelType = TypeVar("ModelType", bound=Base)


class Repository(Generic[ModelType]):
    """Generic session-backed repository."""

    model: type[ModelType]

    def __init__(self, session: Session):
        self.session = session

    def get(self, entity_id: UUID) -> ModelType | None:
        return self.session.get(self.model, entity_id)

    def require(self, entity_id: UUID) -> ModelType:
        entity = self.get(entity_id)
        if entity is None:
            raise self.not_found(str(entity_id))
        return entity

    def not_found(self, lookup: str) -> NotFoundError:
        return PartyNotFoundError(self.model.__name__, lookup)

    def create(self, **values: Any) -> ModelType:
        entity = self.model(**values)
        self.session.add(entity)
        self.session.flush()
        return entity

    def update(self, entity: ModelType, **values: Any) -> ModelType:
        for name, value in values.items():
            if not hasattr(self.model, name):
                raise AttributeError(f"{self.model.__name__} has no attribute {name}")
            setattr(entity, name, value)
        self.session.flush()
        return entity

    def list_by(self, **filters: Any) -> Sequence[ModelType]:
        stmt = select(self.model).filter_by(**filters)
        return self.session.execute(stmt).scalars().all()


class EmployerRepository(Repository[Employer]):
    model = Employer


class MerchantRepository(Repository[Merchant]):
    model = Merchant


class EmployeeRepository(Repository[Employee]):
    model = Employee

    def get_by_phone(self, phone: str) -> Employee | None:
        return self.session.execute(
            select(Employee).where(Employee.phone == phone)
        ).scalar_one_or_none()

    def require_by_phone(self, phone: str) -> Employee:
        employee = self.get_by_phone(phone)
        if employee is None:
            raise PartyNotFoundError("Employee", phone)
        return employee


class ContractRepository(Repository[Contract]):
    model = Contract

    def not_found(self, lookup: str) -> NotFoundError:
        return ContractNotFoundError(lookup)

    def get_for_update(self, contract_id: UUID) -> Contract:
        contract = self.session.execute(
            select(Contract)
            .where(Contract.id == contract_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if contract is None:
            raise ContractNotFoundError(str(contract_id))
        return contract

    def list_for_employee(self, employee_id: UUID) -> Sequence[Contract]:
        return self.session.execute(
            select(Contract)
            .where(Contract.employee_id == employee_id)
            .order_by(Contract.opened_at)
        ).scalars().all()

    def active_monthly_deductions(self, employee_id: UUID) -> Decimal:
        """Sum of installment amounts of the employee's active contracts."""
        total = self.session.execute(
            select(func.coalesce(func.sum(Contract.installment_amount), 0)).where(
                Contract.employee_id == employee_id,
                Contract.state.in_([s.value for s in ACTIVE_STATES]),
            )
        ).scalar_one()
        return Decimal(str(total))

    def has_overdue_installment(self, contract_id: UUID) -> bool:
        return self.session.execute(
            select(func.count(Installment.id)).where(
                Installment.contract_id == contract_id,
                Installment.status == InstallmentStatus.OVERDUE.value,
            )
        ).scalar_one() > 0
