"""Utility modules for the BNPL kernel."""

from bnpl_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    sign,
    signatures_match,
    to_jsonable,
)
from bnpl_kernel.utils.idempotency import scoped_key

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "sign",
    "signatures_match",
    "to_jsonable",
    "scoped_key",
]
