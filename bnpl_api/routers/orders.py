from uuid import UUID

from fastapi import APIRouter, Depends

from bnpl_api.deps import ApiContainer, get_container, require_idempotency_key
from bnpl_api.envelope import ok
from bnpl_api.schemas import HoldFundsIn, ReasonIn, RefundIn, ResolveDisputeIn
from bnpl_kernel.exceptions import ContractNotFoundError
from bnpl_kernel.selectors.contract_selector import ContractSelector
from bnpl_services.settlement_service import SettlementService

router = APIRouter(prefix="/orders", tags=["Orders"])


def _settlement(session, container: ApiContainer) -> SettlementService:
    return SettlementService(session, container.escrow, policy=container.policy, clock=container.clock)


def _state(contract) -> dict:
    return {"contractId": contract.id, "state": contract.state}


@router.get("/{contract_id}")
def get_order(contract_id: UUID, container: ApiContainer = Depends(get_container)):
    with container.unit_of_work() as session:
        view = ContractSelector(session).get(contract_id)
    if view is None:
        raise ContractNotFoundError(str(contract_id))
    data = ok(view)
    data["data"]["outstanding"] = str(view.outstanding)
    return data


@router.post("/{contract_id}/hold")
def hold_funds(
    contract_id: UUID,
    body: HoldFundsIn | None = None,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    amount = body.amount if body is not None else None
    with container.unit_of_work() as session:
        result = _settlement(session, container).hold_funds(contract_id, key, amount=amount)
    return ok(result.to_dict())


@router.post("/{contract_id}/confirm-delivery")
def confirm_delivery(
    contract_id: UUID,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        result = _settlement(session, container).confirm_delivery(contract_id, key)
    return ok(result.to_dict())


@router.post("/{contract_id}/refund")
def refund(
    contract_id: UUID,
    body: RefundIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        result = _settlement(session, container).refund(contract_id, body.amount, body.reason, key)
    return ok(result.to_dict())


@router.post("/{contract_id}/dispute")
def open_dispute(
    contract_id: UUID,
    body: ReasonIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    request = {"contract_id": str(contract_id), "reason": body.reason}
    with container.unit_of_work() as session:
        data = container.run_once(
            session, "orders.dispute", key, request,
            lambda: _state(_settlement(session, container).open_dispute(contract_id, body.reason)),
        )
    return ok(data)


@router.post("/{contract_id}/resolve-dispute")
def resolve_dispute(
    contract_id: UUID,
    body: ResolveDisputeIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    request = {
        "contract_id": str(contract_id),
        "resolution": body.resolution,
        "reinstate": body.reinstate,
    }
    with container.unit_of_work() as session:
        data = container.run_once(
            session, "orders.resolve_dispute", key, request,
            lambda: _state(_settlement(session, container).resolve_dispute(
                contract_id, body.resolution, reinstate=body.reinstate,
            )),
        )
    return ok(data)


@router.post("/{contract_id}/cancel")
def cancel(
    contract_id: UUID,
    body: ReasonIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    request = {"contract_id": str(contract_id), "reason": body.reason}
    with container.unit_of_work() as session:
        data = container.run_once(
            session, "orders.cancel", key, request,
            lambda: _state(_settlement(session, container).cancel(contract_id, body.reason)),
        )
    return ok(data)
