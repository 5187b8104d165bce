"""
Tests for loan-ledger booking and repayment forwarding.
"""

from decimal import Decimal

import pytest

from bnpl_kernel.exceptions import ExternalGatewayError
from bnpl_kernel.models.contract import Contract, LedgerBookingStatus
from bnpl_services.loan_booking_service import LoanBookingService


@pytest.fixture
def booking(session, ledger) -> LoanBookingService:
    return LoanBookingService(session, ledger)


class TestBook:

    def test_book_creates_loan(self, session, funded_contract, booking, ledger):
        contract_id = funded_contract()

        loan_id = booking.book({"contract_id": str(contract_id)})

        contract = session.get(Contract, contract_id)
        assert contract.external_loan_id == loan_id
        assert contract.ledger_status == LedgerBookingStatus.BOOKED
        assert ledger.loans[loan_id].outstanding == Decimal("202000")
        assert ledger.loans[loan_id].principal == Decimal("200000")

    def test_booking_twice_is_a_no_op(self, funded_contract, booking, ledger):
        contract_id = funded_contract()
        first = booking.book({"contract_id": str(contract_id)})

        second = booking.book({"contract_id": str(contract_id)})

        assert second == first
        assert len(ledger.loans) == 1

    def test_ledger_failure_raises_and_stays_pending(self, session, funded_contract, booking, ledger):
        contract_id = funded_contract()
        ledger.fail_next("create_loan")

        with pytest.raises(ExternalGatewayError):
            booking.book({"contract_id": str(contract_id)})

        assert session.get(Contract, contract_id).ledger_status == LedgerBookingStatus.PENDING


class TestForwardRepayment:

    def test_repayment_reduces_ledger_balance(self, funded_contract, booking, ledger):
        contract_id = funded_contract()
        loan_id = booking.book({"contract_id": str(contract_id)})

        booking.forward_repayment({
            "contract_id": str(contract_id), "amount": "67333", "reference": "PAY-1#1",
        })

        assert ledger.loans[loan_id].outstanding == Decimal("134667")
        assert ledger.loans[loan_id].repayments == [(Decimal("67333"), "PAY-1#1")]

    def test_unbooked_loan_waits(self, funded_contract, booking):
        contract_id = funded_contract()

        with pytest.raises(ExternalGatewayError, match="not booked"):
            booking.forward_repayment({
                "contract_id": str(contract_id), "amount": "67333", "reference": "PAY-1#1",
            })

    def test_ledger_failure_raises(self, funded_contract, booking, ledger):
        contract_id = funded_contract()
        booking.book({"contract_id": str(contract_id)})
        ledger.fail_next("post_repayment")

        with pytest.raises(ExternalGatewayError):
            booking.forward_repayment({
                "contract_id": str(contract_id), "amount": "1000", "reference": "PAY-2#1",
            })
