"""
Module: bnpl_kernel.services.base
Responsibility: Abstract base class for all kernel and orchestration
    services.  Establishes the session-injection pattern.
Architecture position: Kernel > Services.

Invariants enforced:
    - Services call ``session.flush()`` and never ``commit()`` or
      ``rollback()``.  The caller owns the transaction, which is what makes
      capital reservation, contract creation, the idempotency record and the
      outbox event commit or roll back together.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for all services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(self, session: Session):
        self.session = session
