"""
Typed Exception Hierarchy for the BNPL orchestration kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Checkout, settlement and reconciliation callers must react to failures by
category: a business decline is shown to the customer, a gateway outage is
retried later, an illegal transition points at a duplicate webhook. Parsing
message strings for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BnplError (base)
    |
    +-- ValidationError
    |   +-- InactivePartyError
    |   +-- AuthorizationTokenError
    |
    +-- NotFoundError
    |   +-- PartyNotFoundError
    |   +-- LenderNotFoundError
    |   +-- ContractNotFoundError
    |
    +-- LifecycleError
    |   +-- IllegalTransitionError
    |
    +-- DecisionError
    |   +-- AffordabilityDeclinedError
    |   +-- NoEligibleLenderError
    |
    +-- ExternalGatewayError
    |
    +-- IdempotencyError
    |   +-- IdempotencyConflictError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- CapitalExhaustedError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed or out-of-range request
                | INACTIVE_PARTY              | Merchant/employer/lender deactivated
                | INVALID_AUTH_TOKEN          | Checkout token bad, expired or foreign
----------------|-----------------------------|-----------------------------------------
Not found       | PARTY_NOT_FOUND             | Unknown merchant/employee/employer
                | LENDER_NOT_FOUND            | Unknown lender
                | CONTRACT_NOT_FOUND          | Unknown contract
----------------|-----------------------------|-----------------------------------------
Lifecycle       | ILLEGAL_TRANSITION          | Target state not reachable from current
----------------|-----------------------------|-----------------------------------------
Decision        | AFFORDABILITY_DECLINED      | Credit engine declined (carries reasoning)
                | NO_ELIGIBLE_LENDER          | Allocation engine returned no lender
----------------|-----------------------------|-----------------------------------------
Gateway         | EXTERNAL_GATEWAY_ERROR      | Escrow/ledger/CRB call failed
----------------|-----------------------------|-----------------------------------------
Idempotency     | IDEMPOTENCY_CONFLICT        | Same key reused with a different payload
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Contract modified by another writer
                | CAPITAL_EXHAUSTED           | Conditional capital reservation lost
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Modifying ledger/audit/reconciliation fact

===============================================================================
HANDLING PATTERNS
===============================================================================

1. BUSINESS DECLINES ARE ANSWERS, NOT FAILURES:

    try:
        result = checkout.authorize(request)
    except AffordabilityDeclinedError as e:
        return decline(code=e.code, reason=e.reasoning)

2. RETRYABLE CATEGORIES:

    except BnplError as e:
        if e.is_retryable:
            schedule_retry()

===============================================================================
"""


class BnplError(Exception):
    """
    Base exception for all BNPL kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BNPL_ERROR"
    is_retryable: bool = False


# Validation


class ValidationError(BnplError):
    """Request is malformed or out of range. Never retried automatically."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InactivePartyError(ValidationError):
    """Merchant, employer or lender exists but is deactivated."""

    code: str = "INACTIVE_PARTY"

    def __init__(self, party_type: str, party_id: str):
        self.party_type = party_type
        self.party_id = party_id
        super().__init__(f"{party_type} {party_id} is not active")


class AuthorizationTokenError(ValidationError):
    """Checkout authorization token failed verification."""

    code: str = "INVALID_AUTH_TOKEN"

    def __init__(self, contract_id: str, reason: str):
        self.contract_id = contract_id
        self.reason = reason
        super().__init__(f"Authorization token rejected for contract {contract_id}: {reason}")


# Lookups


class NotFoundError(BnplError):
    """Base exception for unknown entities."""

    code: str = "NOT_FOUND"


class PartyNotFoundError(NotFoundError):
    """Unknown merchant, employee or employer."""

    code: str = "PARTY_NOT_FOUND"

    def __init__(self, party_type: str, lookup: str):
        self.party_type = party_type
        self.lookup = lookup
        super().__init__(f"{party_type} not found: {lookup}")


class LenderNotFoundError(NotFoundError):
    code: str = "LENDER_NOT_FOUND"

    def __init__(self, lender_id: str):
        self.lender_id = lender_id
        super().__init__(f"Lender not found: {lender_id}")


class ContractNotFoundError(NotFoundError):
    code: str = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        super().__init__(f"Contract not found: {contract_id}")


# Lifecycle


class LifecycleError(BnplError):
    """Base exception for contract lifecycle errors."""

    code: str = "LIFECYCLE_ERROR"


class IllegalTransitionError(LifecycleError):
    """
    Target state is not reachable from the contract's current state.

    The contract is left unchanged when this is raised.
    """

    code: str = "ILLEGAL_TRANSITION"

    def __init__(self, contract_id: str, from_state: str, to_state: str):
        self.contract_id = contract_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition for contract {contract_id}: {from_state} -> {to_state}"
        )


# Decisions


class DecisionError(BnplError):
    """Base exception for business declines returned to the caller."""

    code: str = "DECISION_ERROR"


class AffordabilityDeclinedError(DecisionError):
    """Credit engine declined the request."""

    code: str = "AFFORDABILITY_DECLINED"

    def __init__(
        self,
        reasoning: str,
        confidence_score: str,
        decline_code: str,
        approved_amount: str = "0",
    ):
        self.reasoning = reasoning
        self.confidence_score = confidence_score
        self.decline_code = decline_code
        self.approved_amount = approved_amount
        super().__init__(reasoning)


class NoEligibleLenderError(DecisionError):
    """No lender in the pool can fund the request."""

    code: str = "NO_ELIGIBLE_LENDER"

    def __init__(self, amount: str, tenor_days: int, risk_tier: str):
        self.amount = amount
        self.tenor_days = tenor_days
        self.risk_tier = risk_tier
        super().__init__(
            f"No eligible lender for {amount} over {tenor_days} days ({risk_tier})"
        )


# External collaborators


class ExternalGatewayError(BnplError):
    """An escrow, loan ledger or CRB call failed."""

    code: str = "EXTERNAL_GATEWAY_ERROR"
    is_retryable: bool = True

    def __init__(self, gateway: str, operation: str, reference: str, detail: str = ""):
        self.gateway = gateway
        self.operation = operation
        self.reference = reference
        self.detail = detail
        super().__init__(f"{gateway}.{operation} failed for {reference}: {detail}")


# Idempotency


class IdempotencyError(BnplError):
    code: str = "IDEMPOTENCY_ERROR"


class IdempotencyConflictError(IdempotencyError):
    """
    Idempotency key reused with a different request payload.

    A protocol violation by the caller, never a replay.
    """

    code: str = "IDEMPOTENCY_CONFLICT"

    def __init__(self, key: str, expected_hash: str, received_hash: str):
        self.key = key
        self.expected_hash = expected_hash
        self.received_hash = received_hash
        super().__init__(
            f"Idempotency key {key} reused with a different payload: "
            f"expected {expected_hash}, received {received_hash}"
        )


# Concurrency


class ConcurrencyError(BnplError):
    code: str = "CONCURRENCY_ERROR"
    is_retryable: bool = True


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class CapitalExhaustedError(ConcurrencyError):
    """Conditional capital reservation did not apply."""

    code: str = "CAPITAL_EXHAUSTED"

    def __init__(self, lender_id: str, amount: str):
        self.lender_id = lender_id
        self.amount = amount
        super().__init__(f"Lender {lender_id} cannot reserve {amount}")


# Immutability


class ImmutabilityViolationError(BnplError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )
