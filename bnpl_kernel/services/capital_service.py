"""
LenderCapitalService -- the only writer of ``Lender.capital_utilized``.

Responsibility:
    Reserve capital for a new contract and release it when the contract
    ends, each as a single conditional UPDATE:

        UPDATE lenders
           SET capital_utilized = capital_utilized + :amount
         WHERE id = :lender_id AND is_active
           AND capital_utilized + :amount <= capital_limit

    A rowcount of 0 means another checkout won the race (or the lender was
    deactivated); the caller re-allocates against the remaining lenders.

Architecture position:
    Kernel > Services.  Runs inside the checkout transaction, so the
    reservation commits or rolls back with the contract it funds.

Invariants enforced:
    - 0 <= capital_utilized <= capital_limit after every statement, under
      any interleaving of concurrent callers (no read-modify-write).
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.models.lender import Lender
from bnpl_kernel.services.base import BaseService

logger = get_logger("services.capital")


class LenderCapitalService(BaseService):

    def reserve(self, lender_id: UUID, amount: Decimal) -> bool:
        """Atomically add ``amount`` to utilized capital if it fits."""
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive, got {amount}")

        self.session.flush()
        result = self.session.connection().execute(
            update(Lender)
            .where(
                Lender.id == lender_id,
                Lender.is_active.is_(True),
                Lender.capital_utilized + amount <= Lender.capital_limit,
            )
            .values(capital_utilized=Lender.capital_utilized + amount)
        )
        reserved = result.rowcount == 1
        self._expire_cached(lender_id)

        if reserved:
            logger.info("lender_capital_reserved", extra={
                "lender_id": str(lender_id), "amount": str(amount),
            })
        else:
            logger.warning("lender_capital_reservation_rejected", extra={
                "lender_id": str(lender_id), "amount": str(amount),
            })
        return reserved

    def release(self, lender_id: UUID, amount: Decimal) -> bool:
        """Atomically return ``amount`` to the lender; never below zero."""
        if amount <= 0:
            raise ValueError(f"Release amount must be positive, got {amount}")

        self.session.flush()
        result = self.session.connection().execute(
            update(Lender)
            .where(
                Lender.id == lender_id,
                Lender.capital_utilized - amount >= 0,
            )
            .values(capital_utilized=Lender.capital_utilized - amount)
        )
        released = result.rowcount == 1
        self._expire_cached(lender_id)

        if released:
            logger.info("lender_capital_released", extra={
                "lender_id": str(lender_id), "amount": str(amount),
            })
        else:
            logger.error("lender_capital_release_rejected", extra={
                "lender_id": str(lender_id), "amount": str(amount),
            })
        return released

    def _expire_cached(self, lender_id: UUID) -> None:
        # Core UPDATE bypasses the identity map
        cached = self.session.identity_map.get(Session.identity_key(Lender, lender_id))
        if cached is not None:
            self.session.expire(cached, ["capital_utilized"])
