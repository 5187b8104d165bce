"""
FastAPI application factory.

``create_app()`` with no arguments wires the process from the environment
(ApiSettings.from_env) with the in-memory gateway implementations; callers
with real gateways, or tests, pass a ready ApiContainer.
"""

from __future__ import annotations

from fastapi import FastAPI

from bnpl_api.deps import ApiContainer
from bnpl_api.envelope import install_exception_handlers
from bnpl_api.routers import admin, checkout, employer, lender, orders
from bnpl_api.settings import ApiSettings
from bnpl_config import get_active_policy
from bnpl_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from bnpl_kernel.domain.clock import SystemClock
from bnpl_kernel.logging_config import configure_logging, get_logger
from bnpl_services.gateways import (
    InMemoryCrbService,
    InMemoryEscrowGateway,
    InMemoryEventBus,
    InMemoryLoanLedgerGateway,
)

logger = get_logger("api.app")


def container_from_settings(settings: ApiSettings) -> ApiContainer:
    configure_logging(level=settings.log_level)
    init_engine_from_url(settings.database_url)
    create_tables()
    clock = SystemClock()
    return ApiContainer(
        session_factory=get_session_factory(),
        crb=InMemoryCrbService(),
        escrow=InMemoryEscrowGateway(clock),
        ledger=InMemoryLoanLedgerGateway(),
        event_bus=InMemoryEventBus(),
        policy=get_active_policy(settings.policy_path),
        clock=clock,
        token_secret=settings.auth_token_secret,
    )


def create_app(container: ApiContainer | None = None) -> FastAPI:
    app = FastAPI(title="BNPL Payroll Orchestration API", version="1.0")
    app.state.container = container or container_from_settings(ApiSettings.from_env())

    install_exception_handlers(app)
    app.include_router(checkout.router)
    app.include_router(orders.router)
    app.include_router(employer.router)
    app.include_router(lender.router)
    app.include_router(admin.router)

    @app.get("/health")
    def health():
        return {"success": True, "data": {"status": "ok"}}

    logger.info("api_created", extra={"policy_checksum": app.state.container.policy.checksum})
    return app
