"""
BNPL Kernel

Persistence, lifecycle and invariants for payroll-deduction
buy-now-pay-later contracts:
- Validated contract lifecycle with append-only history
- Atomic lender capital reservation
- Idempotent mutating operations
- Transactional outbox for async side effects
"""

__version__ = "0.1.0"
