"""
Reconciliation records: one immutable row per (run, channel, period, scope).

Only the resolution fields may change after creation; the ORM listener in
db/immutability.py rejects any other update and every delete.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bnpl_kernel.db.base import Base, UUIDString


class ReconciliationChannel(str, Enum):
    PAYROLL = "PAYROLL"
    LENDER_LEDGER = "LENDER_LEDGER"
    ESCROW = "ESCROW"


class ReconciliationRecordStatus(str, Enum):
    MATCHED = "MATCHED"
    VARIANCE = "VARIANCE"
    MISSING = "MISSING"


RESOLUTION_FIELDS = frozenset({"resolution_note", "resolved_by_id", "resolved_at"})


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"

    __table_args__ = (
        UniqueConstraint(
            "run_id", "channel", "period_key", "scope_ref",
            name="uq_reconciliation_run_channel_period",
        ),
        Index("idx_reconciliation_channel_period", "channel", "period_key"),
        Index("idx_reconciliation_reconciled_at", "reconciled_at"),
    )

    run_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    channel: Mapped[ReconciliationChannel] = mapped_column(String(20), nullable=False)
    period_key: Mapped[str] = mapped_column(String(10), nullable=False)
    # Employer id for payroll, contract id for ad hoc checks, "*" for the whole channel
    scope_ref: Mapped[str] = mapped_column(String(36), nullable=False, default="*")
    expected_amount: Mapped[Decimal] = mapped_column(nullable=False)
    actual_amount: Mapped[Decimal] = mapped_column(nullable=False)
    variance: Mapped[Decimal] = mapped_column(nullable=False)
    tolerance: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[ReconciliationRecordStatus] = mapped_column(String(10), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    reconciled_at: Mapped[datetime] = mapped_column(nullable=False)

    resolution_note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
