"""
Deterministic hashing utilities.

Request fingerprints (idempotency), auth-token signatures and config
checksums all go through these functions so that equal inputs always hash
equally.
"""

import hashlib
import hmac
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Serialize the non-JSON types used in request payloads."""
    if isinstance(obj, Decimal):
        # Normalize so 1000 and 1000.00 fingerprint identically
        return str(obj.normalize())
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, stable special types."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """SHA-256 hex digest (64 chars) of the canonical payload."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def sign(secret: str, message: str) -> str:
    """HMAC-SHA256 hex signature."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected, received)


def to_jsonable(data: dict | list | Any) -> Any:
    """Plain JSON-safe copy of ``data``: Decimals, UUIDs and dates as strings."""
    return json.loads(json.dumps(data, default=_plain_serializer))


def _plain_serializer(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (Decimal, UUID)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
