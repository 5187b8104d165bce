"""
OutboxService -- enqueue async side effects inside the business transaction.

Dispatch, backoff and escalation live in ``bnpl_batch.outbox``; this service
only writes PENDING rows so that a side effect exists if and only if the
business change that caused it committed.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.models.outbox import OutboxEvent, OutboxStatus
from bnpl_kernel.services.base import BaseService
from bnpl_kernel.utils.hashing import to_jsonable

logger = get_logger("services.outbox")


class OutboxService(BaseService):

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def enqueue(self, event_type: str, aggregate_id: Any, payload: dict[str, Any]) -> OutboxEvent:
        now = self._clock.now()
        event = OutboxEvent(
            event_type=event_type,
            aggregate_id=str(aggregate_id),
            # Decimals and UUIDs become strings
            payload=to_jsonable(payload),
            status=OutboxStatus.PENDING.value,
            attempts=0,
            created_at=now,
            next_attempt_at=now,
        )
        self.session.add(event)
        self.session.flush()
        logger.info("outbox_event_enqueued", extra={
            "event_type": event_type,
            "aggregate_id": str(aggregate_id),
            "outbox_event_id": str(event.id),
        })
        return event
