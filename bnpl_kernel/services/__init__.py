"""Kernel services: idempotency, lender capital, outbox."""

from bnpl_kernel.services.base import BaseService
from bnpl_kernel.services.capital_service import LenderCapitalService
from bnpl_kernel.services.idempotency_service import IdempotencyService
from bnpl_kernel.services.outbox_service import OutboxService

__all__ = [
    "BaseService",
    "IdempotencyService",
    "LenderCapitalService",
    "OutboxService",
]
