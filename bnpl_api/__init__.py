"""
bnpl_api -- HTTP surface over the orchestration services.

Every response uses the ``{success, data | error, code}`` envelope; mutating
endpoints require an ``Idempotency-Key`` header (checkout also accepts
``idempotencyKey`` in the body).
"""

from bnpl_api.app import create_app
from bnpl_api.deps import ApiContainer

__all__ = ["ApiContainer", "create_app"]
