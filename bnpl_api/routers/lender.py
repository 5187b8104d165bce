from uuid import UUID

from fastapi import APIRouter, Depends

from bnpl_api.deps import ApiContainer, get_container
from bnpl_api.envelope import ok
from bnpl_services.portfolio_service import PortfolioService

router = APIRouter(prefix="/lender", tags=["Lender"])


@router.get("/pool/stats")
def pool_stats(container: ApiContainer = Depends(get_container)):
    with container.unit_of_work() as session:
        stats = PortfolioService(session, policy=container.policy, clock=container.clock).allocation_stats()
    data = ok(stats)
    data["data"]["byLender"] = {str(lender_id): str(u) for lender_id, u in stats.by_lender}
    del data["data"]["by_lender"]
    return data


@router.get("/{lender_id}/portfolio")
def portfolio(lender_id: UUID, container: ApiContainer = Depends(get_container)):
    with container.unit_of_work() as session:
        result = PortfolioService(session, policy=container.policy, clock=container.clock).portfolio(lender_id)
    return ok(result)
