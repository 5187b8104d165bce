"""
ORM-level immutability enforcement.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                 | When Immutable         | Mutable fields
-----------------------|------------------------|------------------------------
LedgerEntry            | ALWAYS                 | none (reverse with new rows)
ContractTransition     | ALWAYS                 | none
ReconciliationRecord   | ALWAYS                 | resolution_note, resolved_by_id,
                       |                        | resolved_at

SQLAlchemy fires ``before_update`` / ``before_delete`` before SQL reaches the
database.  The checks below inspect attribute history and raise
ImmutabilityViolationError, aborting the flush.  ``before_update`` also fires
for instances that are dirty without net column changes; those pass.

Usage:

    from bnpl_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup (create_tables does it)

===============================================================================
"""

from sqlalchemy import event, inspect

from bnpl_kernel.exceptions import ImmutabilityViolationError
from bnpl_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _changed_columns(target) -> set[str]:
    state = inspect(target)
    return {
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_ledger_entry_update(mapper, connection, target):
    if _changed_columns(target):
        _block("LedgerEntry", target, "UPDATE",
               "Ledger entries are append-only; post a REVERSAL instead")


def _check_ledger_entry_delete(mapper, connection, target):
    _block("LedgerEntry", target, "DELETE", "Ledger entries cannot be deleted")


def _check_transition_update(mapper, connection, target):
    if _changed_columns(target):
        _block("ContractTransition", target, "UPDATE",
               "Lifecycle history is append-only")


def _check_transition_delete(mapper, connection, target):
    _block("ContractTransition", target, "DELETE", "Lifecycle history cannot be deleted")


def _check_reconciliation_record_update(mapper, connection, target):
    from bnpl_kernel.models.reconciliation import RESOLUTION_FIELDS

    forbidden = _changed_columns(target) - RESOLUTION_FIELDS
    if forbidden:
        _block("ReconciliationRecord", target, "UPDATE",
               f"Only resolution metadata may change, not {sorted(forbidden)}")


def _check_reconciliation_record_delete(mapper, connection, target):
    _block("ReconciliationRecord", target, "DELETE",
           "Reconciliation records cannot be deleted")


def _listeners():
    from bnpl_kernel.models.contract import ContractTransition
    from bnpl_kernel.models.reconciliation import ReconciliationRecord
    from bnpl_kernel.models.settlement import LedgerEntry

    return (
        (LedgerEntry, "before_update", _check_ledger_entry_update),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (ContractTransition, "before_update", _check_transition_update),
        (ContractTransition, "before_delete", _check_transition_delete),
        (ReconciliationRecord, "before_update", _check_reconciliation_record_update),
        (ReconciliationRecord, "before_delete", _check_reconciliation_record_delete),
    )


def register_immutability_listeners() -> None:
    """Register all immutability listeners (idempotent)."""
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)

