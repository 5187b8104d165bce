"""
Wiring for request handlers.

``ApiContainer`` holds the long-lived collaborators (session factory,
gateways, policy, clock) and builds services per unit of work.  It is stored
on ``app.state`` and reached through the ``get_container`` dependency, so
tests swap in gateway doubles and a deterministic clock.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import Header, Request
from sqlalchemy.orm import Session

from bnpl_batch.jobs import BnplJobs
from bnpl_config import BnplPolicy
from bnpl_kernel.domain.clock import Clock
from bnpl_kernel.exceptions import ValidationError
from bnpl_kernel.services.idempotency_service import IdempotencyService
from bnpl_kernel.utils.hashing import to_jsonable
from bnpl_services.gateways import CrbService, EscrowGateway, EventBus, LoanLedgerGateway


@dataclass
class ApiContainer:
    session_factory: Callable[[], Session]
    crb: CrbService
    escrow: EscrowGateway
    ledger: LoanLedgerGateway
    event_bus: EventBus
    policy: BnplPolicy
    clock: Clock
    token_secret: str

    @contextmanager
    def unit_of_work(self) -> Generator[Session, None, None]:
        """Commit on success; roll back and re-raise on any error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_once(
        self,
        session: Session,
        scope: str,
        key: str,
        request: dict[str, Any],
        operation: Callable[[], Any],
    ) -> Any:
        """
        Run ``operation`` once per (scope, key) and return its JSON form.

        A repeated key returns the stored result without running again; the
        same key with a different ``request`` raises IdempotencyConflictError.
        """
        idempotency = IdempotencyService(
            session,
            self.clock,
            default_ttl=timedelta(hours=self.policy.settlement.idempotency_ttl_hours),
        )
        cached = idempotency.replay(scope, key, request)
        if cached is not None:
            return cached
        data = to_jsonable(operation())
        idempotency.remember(scope, key, request, data)
        return data

    def jobs(self) -> BnplJobs:
        return BnplJobs(self.escrow, self.ledger, self.event_bus, self.policy, self.clock)


def get_container(request: Request) -> ApiContainer:
    return request.app.state.container


def require_idempotency_key(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> str:
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationError("Idempotency-Key header is required", field="Idempotency-Key")
    return idempotency_key.strip()
