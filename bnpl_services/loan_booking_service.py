"""
LoanBookingService -- downstream loan-ledger side effects.

Handles the ``loan.booking_requested`` and ``loan.repayment_posted`` outbox
events.  Runs from the outbox dispatcher, never on the checkout or
settlement hot path; a gateway failure raises ExternalGatewayError so the
dispatcher retries with backoff and eventually escalates.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from bnpl_kernel.exceptions import ExternalGatewayError
from bnpl_kernel.logging_config import LogContext, get_logger
from bnpl_kernel.models.contract import LedgerBookingStatus
from bnpl_kernel.repositories import ContractRepository
from bnpl_kernel.services.base import BaseService
from bnpl_services.gateways import LoanLedgerGateway

logger = get_logger("services.loan_booking")


class LoanBookingService(BaseService):

    def __init__(self, session: Session, ledger: LoanLedgerGateway):
        super().__init__(session)
        self._ledger = ledger
        self._contracts = ContractRepository(session)

    def book(self, payload: dict[str, Any]) -> str | None:
        """Create the loan in the lender ledger; returns the external loan id."""
        contract_id = UUID(payload["contract_id"])
        with LogContext.bind(contract_id=contract_id):
            contract = self._contracts.get_for_update(contract_id)
            if contract.ledger_status == LedgerBookingStatus.BOOKED:
                return contract.external_loan_id

            reference = f"BOOK-{contract.id}"
            result = self._ledger.create_loan(
                contract_id=str(contract.id),
                lender_id=str(contract.lender_id),
                principal=contract.principal,
                total_payable=contract.total_payable,
                tenor_days=contract.tenor_days,
                reference=reference,
            )
            if not result.ok:
                raise ExternalGatewayError("loan_ledger", "create_loan", reference, result.detail)

            contract.external_loan_id = result.transaction_id
            contract.ledger_status = LedgerBookingStatus.BOOKED.value
            self.session.flush()
            logger.info("loan_booked", extra={
                "contract_id": str(contract.id),
                "external_loan_id": result.transaction_id,
            })
            return result.transaction_id

    def forward_repayment(self, payload: dict[str, Any]) -> None:
        """
        Post a repayment to the lender ledger.

        Raises ExternalGatewayError while the loan is not yet booked, so the
        repayment waits for its booking event.
        """
        contract_id = UUID(payload["contract_id"])
        amount = Decimal(payload["amount"])
        reference = payload["reference"]
        with LogContext.bind(contract_id=contract_id):
            contract = self._contracts.require(contract_id)
            if contract.external_loan_id is None:
                raise ExternalGatewayError(
                    "loan_ledger", "post_repayment", reference, "loan not booked yet"
                )
            result = self._ledger.post_repayment(contract.external_loan_id, amount, reference)
            if not result.ok:
                raise ExternalGatewayError("loan_ledger", "post_repayment", reference, result.detail)
            logger.info("repayment_forwarded", extra={
                "contract_id": str(contract.id),
                "amount": str(amount),
                "external_loan_id": contract.external_loan_id,
            })
