"""
bnpl_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines (bnpl_engines/)
    with database sessions, external gateways and the clock: checkout,
    settlement and escrow, payroll, reconciliation, lender portfolios and
    downstream loan booking.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        bnpl_services/ -> bnpl_engines/  (allowed)
        bnpl_services/ -> bnpl_kernel/   (allowed)
        bnpl_engines/  -> bnpl_services/ (FORBIDDEN)
        bnpl_kernel/   -> bnpl_services/ (FORBIDDEN)

Invariants enforced:
    - Services flush and never commit; the caller owns the transaction.
    - External collaborators are injected as protocol implementations
      (gateways.py), never constructed inside a service.
"""

from bnpl_services.checkout_service import CheckoutRequest, CheckoutResult, CheckoutService
from bnpl_services.gateways import (
    CrbReport,
    CrbService,
    EscrowGateway,
    EventBus,
    GatewayResult,
    GatewayStatus,
    InMemoryCrbService,
    InMemoryEscrowGateway,
    InMemoryEventBus,
    InMemoryLoanLedgerGateway,
    LoanLedgerGateway,
    LoanStatus,
)
from bnpl_services.loan_booking_service import LoanBookingService
from bnpl_services.payroll_service import DeductionLine, DeductionSheet, PayrollService
from bnpl_services.portfolio_service import LenderPortfolio, PortfolioService
from bnpl_services.reconciliation_service import ReconciliationService, ReconciliationSummary
from bnpl_services.settlement_service import (
    LineResult,
    Remittance,
    RemittanceLine,
    RemittanceResult,
    SettlementResult,
    SettlementService,
    SettlementStatus,
)

__all__ = [
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutService",
    "CrbReport",
    "CrbService",
    "DeductionLine",
    "DeductionSheet",
    "EscrowGateway",
    "EventBus",
    "GatewayResult",
    "GatewayStatus",
    "InMemoryCrbService",
    "InMemoryEscrowGateway",
    "InMemoryEventBus",
    "InMemoryLoanLedgerGateway",
    "LenderPortfolio",
    "LineResult",
    "LoanBookingService",
    "LoanLedgerGateway",
    "LoanStatus",
    "PayrollService",
    "PortfolioService",
    "ReconciliationService",
    "ReconciliationSummary",
    "Remittance",
    "RemittanceLine",
    "RemittanceResult",
    "SettlementResult",
    "SettlementService",
    "SettlementStatus",
]
