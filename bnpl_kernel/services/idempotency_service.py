"""
IdempotencyService -- read-and-write-once result cache for mutating requests.

Responsibility:
    Implements the ``get(key)`` / ``set(key, value, ttl)`` cache contract on
    top of ``IdempotencyRecord`` rows, and the replay protocol used by every
    mutating operation:

        cached = idem.replay("checkout", key, request)
        if cached is not None:
            return cached               # no side effects re-executed
        ... execute ...
        idem.remember("checkout", key, request, response)

Architecture position:
    Kernel > Services.  The record is flushed in the caller's transaction,
    so the cached response commits atomically with the business change.

Invariants enforced:
    - A live entry is returned verbatim; expired entries are misses and are
      overwritten on the next ``set``.
    - Same key, different request fingerprint -> IdempotencyConflictError.

Failure modes:
    - IntegrityError from a concurrent first write of the same key surfaces
      at flush/commit; the losing caller retries and replays the winner.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.exceptions import IdempotencyConflictError
from bnpl_kernel.logging_config import get_logger
from bnpl_kernel.models.outbox import IdempotencyRecord
from bnpl_kernel.services.base import BaseService
from bnpl_kernel.utils.hashing import hash_payload
from bnpl_kernel.utils.idempotency import scoped_key

logger = get_logger("services.idempotency")


class IdempotencyService(BaseService):
    """
    Database-backed idempotency cache.

    Contract:
        ``replay`` never executes anything; ``remember`` only writes.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        default_ttl: timedelta = timedelta(hours=24),
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._default_ttl = default_ttl

    # ------------------------------------------------------------------
    # Cache contract
    # ------------------------------------------------------------------

    def get(self, key: str) -> IdempotencyRecord | None:
        """Live record for ``key`` or None."""
        record = self._load(key)
        if record is None or record.expires_at <= self._clock.now():
            return None
        return record

    def set(
        self,
        key: str,
        value: dict[str, Any],
        ttl: timedelta | None = None,
        request_hash: str = "",
    ) -> IdempotencyRecord:
        now = self._clock.now()
        expires_at = now + (ttl or self._default_ttl)
        record = self._load(key)
        if record is None:
            record = IdempotencyRecord(
                key=key,
                request_hash=request_hash,
                response=value,
                stored_at=now,
                expires_at=expires_at,
            )
            self.session.add(record)
        else:
            record.request_hash = request_hash
            record.response = value
            record.stored_at = now
            record.expires_at = expires_at
        self.session.flush()
        return record

    # ------------------------------------------------------------------
    # Replay protocol
    # ------------------------------------------------------------------

    def replay(self, scope: str, client_key: str, request: dict[str, Any]) -> dict[str, Any] | None:
        """
        Cached response for a repeated request, or None on a miss.

        Raises:
            IdempotencyConflictError: key reused with a different request.
        """
        key = scoped_key(scope, client_key)
        record = self.get(key)
        if record is None:
            return None

        received = hash_payload(request)
        if record.request_hash != received:
            logger.warning(
                "idempotency_conflict",
                extra={"scope": scope, "expected_hash": record.request_hash,
                       "received_hash": received},
            )
            raise IdempotencyConflictError(key, record.request_hash, received)

        logger.info("idempotent_replay", extra={"scope": scope, "key": key})
        return record.response

    def remember(
        self,
        scope: str,
        client_key: str,
        request: dict[str, Any],
        response: dict[str, Any],
        ttl: timedelta | None = None,
    ) -> None:
        key = scoped_key(scope, client_key)
        self.set(key, response, ttl=ttl, request_hash=hash_payload(request))
        logger.debug("idempotency_recorded", extra={"scope": scope, "key": key})

    def _load(self, key: str) -> IdempotencyRecord | None:
        return self.session.execute(
            select(IdempotencyRecord).where(IdempotencyRecord.key == key)
        ).scalar_one_or_none()
