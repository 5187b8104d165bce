from dataclasses import asdict
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends

from bnpl_api.deps import ApiContainer, get_container, require_idempotency_key
from bnpl_api.envelope import ok
from bnpl_api.schemas import ReconciliationRunIn, ResolutionIn
from bnpl_kernel.models.reconciliation import ReconciliationChannel, ReconciliationRecord
from bnpl_services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/admin", tags=["Admin"])


def _reconciliation(session, container: ApiContainer) -> ReconciliationService:
    return ReconciliationService(
        session, container.ledger, container.escrow, policy=container.policy, clock=container.clock,
    )


def _record(record: ReconciliationRecord) -> dict:
    return {
        "id": record.id,
        "runId": record.run_id,
        "channel": record.channel,
        "periodKey": record.period_key,
        "scopeRef": record.scope_ref,
        "expectedAmount": record.expected_amount,
        "actualAmount": record.actual_amount,
        "variance": record.variance,
        "tolerance": record.tolerance,
        "status": record.status,
        "details": record.details,
        "reconciledAt": record.reconciled_at,
        "resolutionNote": record.resolution_note,
        "resolvedAt": record.resolved_at,
    }


@router.post("/reconciliation/run")
def run_reconciliation(
    body: ReconciliationRunIn | None = None,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    as_of = body.as_of if body is not None else None
    request = {"as_of": as_of.isoformat() if as_of else None}
    with container.unit_of_work() as session:
        records = container.run_once(
            session, "admin.reconciliation_run", key, request,
            lambda: [_record(r) for r in _reconciliation(session, container).run_daily(as_of)],
        )
    return ok(records)


@router.post("/reconciliation/contracts/{contract_id}")
def reconcile_contract(
    contract_id: UUID,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        data = container.run_once(
            session, "admin.reconcile_contract", key, {"contract_id": str(contract_id)},
            lambda: _record(_reconciliation(session, container).reconcile_contract(contract_id)),
        )
    return ok(data)


@router.get("/reconciliation/records")
def list_records(
    channel: ReconciliationChannel | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        records = [
            _record(r) for r in _reconciliation(session, container).list_records(channel, start, end)
        ]
    return ok(records)


@router.get("/reconciliation/summary")
def summary(container: ApiContainer = Depends(get_container)):
    with container.unit_of_work() as session:
        result = _reconciliation(session, container).summary()
    data = ok(result)
    data["data"]["unresolvedExceptions"] = result.unresolved_exceptions
    return data


@router.post("/reconciliation/records/{record_id}/resolve")
def resolve_record(
    record_id: UUID,
    body: ResolutionIn,
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    request = {
        "record_id": str(record_id),
        "note": body.note,
        "actor_id": str(body.actor_id) if body.actor_id else None,
    }
    with container.unit_of_work() as session:
        data = container.run_once(
            session, "admin.resolve_record", key, request,
            lambda: _record(_reconciliation(session, container).attach_resolution(
                record_id, body.note, body.actor_id,
            )),
        )
    return ok(data)


@router.post("/outbox/dispatch")
def dispatch_outbox(
    key: str = Depends(require_idempotency_key),
    container: ApiContainer = Depends(get_container),
):
    with container.unit_of_work() as session:
        report = container.run_once(
            session, "admin.outbox_dispatch", key, {},
            lambda: asdict(container.jobs().dispatch_outbox(session)),
        )
    return ok(report)
