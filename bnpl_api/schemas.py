"""Request bodies.  Field names are camelCase on the wire."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bnpl_engines.allocation import AllocationStrategy


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class CheckoutAuthorizeIn(CamelModel):
    merchant_id: UUID
    customer_phone: str = Field(min_length=5, max_length=32)
    order_amount: Decimal
    tenor_days: int
    idempotency_key: str | None = None
    strategy: AllocationStrategy | None = None


class ConfirmAuthorizationIn(CamelModel):
    contract_id: UUID
    auth_token: str


class HoldFundsIn(CamelModel):
    amount: Decimal | None = None


class RefundIn(CamelModel):
    amount: Decimal
    reason: str = Field(min_length=1, max_length=400)


class ReasonIn(CamelModel):
    reason: str = Field(min_length=1, max_length=400)


class ResolveDisputeIn(CamelModel):
    resolution: str = Field(min_length=1, max_length=400)
    reinstate: bool = True


class RemittanceLineIn(CamelModel):
    contract_id: UUID
    amount: Decimal
    reference: str = ""


class RemittanceIn(CamelModel):
    payroll_cycle: str = Field(pattern=r"^\d{4}-\d{2}$")
    reference: str = Field(min_length=1, max_length=200)
    lines: list[RemittanceLineIn] = Field(min_length=1)


class PayrollExportIn(CamelModel):
    payroll_cycle: str = Field(pattern=r"^\d{4}-\d{2}$")


class ReconciliationRunIn(CamelModel):
    as_of: date | None = None


class ResolutionIn(CamelModel):
    note: str = Field(min_length=1, max_length=1000)
    actor_id: UUID | None = None
