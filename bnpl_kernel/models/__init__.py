"""ORM models for the BNPL kernel."""

from bnpl_kernel.models.contract import (
    UNPAID_INSTALLMENT_STATUSES,
    Contract,
    ContractTransition,
    ExternalStatus,
    Installment,
    InstallmentStatus,
    LedgerBookingStatus,
)
from bnpl_kernel.models.lender import Lender, LenderProduct, RiskAppetite
from bnpl_kernel.models.outbox import IdempotencyRecord, OutboxEvent, OutboxStatus
from bnpl_kernel.models.party import Employee, Employer, Merchant, RiskTier
from bnpl_kernel.models.reconciliation import (
    RESOLUTION_FIELDS,
    ReconciliationChannel,
    ReconciliationRecord,
    ReconciliationRecordStatus,
)
from bnpl_kernel.models.settlement import (
    DeductionInstruction,
    DeductionStatus,
    EscrowTransaction,
    EscrowTransactionKind,
    EscrowTransactionStatus,
    LedgerAccount,
    LedgerEntry,
    LedgerEntryType,
    PayrollRemittance,
)

__all__ = [
    "Contract",
    "ContractTransition",
    "DeductionInstruction",
    "DeductionStatus",
    "Employee",
    "Employer",
    "EscrowTransaction",
    "EscrowTransactionKind",
    "EscrowTransactionStatus",
    "ExternalStatus",
    "IdempotencyRecord",
    "Installment",
    "InstallmentStatus",
    "LedgerAccount",
    "LedgerBookingStatus",
    "LedgerEntry",
    "LedgerEntryType",
    "Lender",
    "LenderProduct",
    "Merchant",
    "OutboxEvent",
    "OutboxStatus",
    "PayrollRemittance",
    "RESOLUTION_FIELDS",
    "ReconciliationChannel",
    "ReconciliationRecord",
    "ReconciliationRecordStatus",
    "RiskAppetite",
    "RiskTier",
    "UNPAID_INSTALLMENT_STATUSES",
]
