"""Idempotency key helpers."""


def scoped_key(scope: str, client_key: str) -> str:
    """
    Namespace a client-supplied key by operation.

    Format: scope:client_key

    The same client key used for a checkout and for a refund must not
    collide, so every cached result is stored under its operation scope.

    Example:
        >>> scoped_key("settlement.refund", "rf-123")
        "settlement.refund:rf-123"
    """
    if not client_key or not client_key.strip():
        raise ValueError("Idempotency key must be non-empty")
    return f"{scope}:{client_key.strip()}"

