"""
Idempotency records and the transactional outbox.

Both are written in the same transaction as the business change they belong
to, so a committed checkout always has its cached response and its pending
side effects, and a rolled-back one has neither.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bnpl_kernel.db.base import Base


class IdempotencyRecord(Base):
    """Cached result of a mutating request, keyed by scope and client key."""

    __tablename__ = "idempotency_records"

    # scope:client_key
    key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    stored_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    ESCALATED = "ESCALATED"


class OutboxEvent(Base):
    """Durable async side effect awaiting dispatch."""

    __tablename__ = "outbox_events"

    __table_args__ = (
        Index("idx_outbox_due", "status", "next_attempt_at"),
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    status: Mapped[OutboxStatus] = mapped_column(
        String(12), nullable=False, default=OutboxStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
