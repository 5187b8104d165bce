from fastapi import APIRouter, Depends, Header

from bnpl_api.deps import ApiContainer, get_container
from bnpl_api.envelope import ok
from bnpl_api.schemas import CheckoutAuthorizeIn, ConfirmAuthorizationIn
from bnpl_kernel.exceptions import ValidationError
from bnpl_services.checkout_service import CheckoutRequest, CheckoutService

router = APIRouter(prefix="/checkout", tags=["Checkout"])


def _service(session, container: ApiContainer) -> CheckoutService:
    return CheckoutService(
        session,
        container.crb,
        container.token_secret,
        policy=container.policy,
        clock=container.clock,
    )


@router.post("/authorize")
def authorize(
    body: CheckoutAuthorizeIn,
    idempotency_header: str | None = Header(default=None, alias="Idempotency-Key"),
    container: ApiContainer = Depends(get_container),
):
    key = (body.idempotency_key or idempotency_header or "").strip()
    if not key:
        raise ValidationError("idempotencyKey is required", field="idempotencyKey")

    request = CheckoutRequest(
        merchant_id=body.merchant_id,
        customer_phone=body.customer_phone,
        order_amount=body.order_amount,
        tenor_days=body.tenor_days,
        idempotency_key=key,
        strategy=body.strategy,
    )
    with container.unit_of_work() as session:
        result = _service(session, container).authorize(request)
    data = result.to_dict()
    data["replayed"] = result.replayed
    return ok(data)


@router.post("/confirm")
def confirm(
    body: ConfirmAuthorizationIn,
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        contract = _service(session, container).confirm_authorization(
            body.contract_id, body.auth_token,
        )
        data = {"contractId": contract.id, "state": contract.state}
    return ok(data)
