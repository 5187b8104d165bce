"""
ORM immutability enforcement.

Ledger entries and lifecycle history are append-only; reconciliation
records accept only resolution metadata.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from bnpl_kernel.exceptions import ImmutabilityViolationError
from bnpl_kernel.models.contract import Contract
from bnpl_kernel.models.reconciliation import ReconciliationRecord
from bnpl_kernel.models.settlement import LedgerEntry

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ledger_entry(session) -> LedgerEntry:
    entry = LedgerEntry(
        contract_id=uuid4(),
        entry_type="REPAYMENT",
        account="LENDER",
        amount=Decimal("1000"),
        reference="RPY-1",
        event_key="repayment:RPY-1:1",
        occurred_at=NOW,
    )
    session.add(entry)
    session.flush()
    return entry


def _record(session) -> ReconciliationRecord:
    record = ReconciliationRecord(
        run_id=uuid4(),
        channel="ESCROW",
        period_key="2024-01-01",
        scope_ref="*",
        expected_amount=Decimal("100"),
        actual_amount=Decimal("90"),
        variance=Decimal("10"),
        tolerance=Decimal("1"),
        status="VARIANCE",
        details={},
        reconciled_at=NOW,
    )
    session.add(record)
    session.flush()
    return record


class TestLedgerEntryImmutability:

    def test_amount_update_is_blocked(self, session):
        entry = _ledger_entry(session)
        entry.amount = Decimal("2000")

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "LedgerEntry"

    def test_delete_is_blocked(self, session):
        entry = _ledger_entry(session)
        session.delete(entry)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestTransitionHistoryImmutability:

    def test_rewriting_history_is_blocked(self, session, funded_contract):
        contract = session.get(Contract, funded_contract())
        first = contract.transitions[0]
        first.reason = "rewritten"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "ContractTransition"


class TestReconciliationRecordImmutability:

    def test_resolution_fields_may_change(self, session):
        record = _record(session)
        record.resolution_note = "Provider confirmed late settlement"
        record.resolved_by_id = uuid4()
        record.resolved_at = NOW

        session.flush()

        assert session.get(ReconciliationRecord, record.id).resolution_note.startswith("Provider")

    def test_amounts_may_not_change(self, session):
        record = _record(session)
        record.actual_amount = Decimal("100")

        with pytest.raises(ImmutabilityViolationError, match="actual_amount"):
            session.flush()

    def test_delete_is_blocked(self, session):
        record = _record(session)
        session.delete(record)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
