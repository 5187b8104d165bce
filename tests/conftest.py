"""
Pytest fixtures for the BNPL orchestration test suite.

Provides:
- Structured logging configured once per session, plus log capture
- A private in-memory SQLite database per test (tables created fresh)
- Seeded employer, employee, merchant and lender pool
- In-memory gateway doubles and a deterministic clock
- Flow helpers that drive a contract through checkout and settlement

Environment Variables:
- BNPL_TEST_DATABASE_URL: file-backed SQLite URL used by the concurrency
  tests.  If not set, a temporary file is used.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from bnpl_config import get_active_policy
from bnpl_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from bnpl_kernel.domain.clock import DeterministicClock
from bnpl_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from bnpl_kernel.models.lender import Lender, LenderProduct, RiskAppetite
from bnpl_kernel.models.party import Employee, Employer, Merchant, RiskTier
from bnpl_services.checkout_service import CheckoutRequest, CheckoutService
from bnpl_services.gateways import (
    InMemoryCrbService,
    InMemoryEscrowGateway,
    InMemoryEventBus,
    InMemoryLoanLedgerGateway,
)
from bnpl_services.settlement_service import SettlementService


# Test actor ID for all test operations
TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000ac")

TOKEN_SECRET = "test-token-secret"

EMPLOYEE_PHONE = "+256700000001"
SECOND_EMPLOYEE_PHONE = "+256700000002"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture bnpl logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, checkout):
            checkout(...)
            logs = captured_logs()
            assert any(r["message"] == "checkout_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("bnpl")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    """Private in-memory database with all tables, disposed after the test."""
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """
    One session per test.

    The in-memory database sits on a single shared connection, so tests
    that open further sessions (API, scheduler) must not keep this one in
    an open transaction at the same time.
    """
    s = session_factory()
    yield s
    s.rollback()
    s.close()


# =============================================================================
# Time, policy and gateways
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture(scope="session")
def policy():
    return get_active_policy()


@pytest.fixture
def crb() -> InMemoryCrbService:
    return InMemoryCrbService(default_score=700)


@pytest.fixture
def escrow(deterministic_clock) -> InMemoryEscrowGateway:
    return InMemoryEscrowGateway(deterministic_clock)


@pytest.fixture
def ledger() -> InMemoryLoanLedgerGateway:
    return InMemoryLoanLedgerGateway()


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


# =============================================================================
# Seed data
# =============================================================================


@dataclass
class SeedData:
    employer: Employer
    employee: Employee
    second_employee: Employee
    merchant: Merchant
    moderate_lender: Lender
    aggressive_lender: Lender


def _product(name: str, tiers: list[str]) -> LenderProduct:
    return LenderProduct(
        name=name,
        min_amount=Decimal("10000"),
        max_amount=Decimal("5000000"),
        tenor_limit_days=180,
        risk_tier_eligibility=tiers,
        is_active=True,
    )


def seed_parties(session: Session) -> SeedData:
    """
    Standard pool: a MODERATE and an AGGRESSIVE lender, both idle.

    With the default RISK_WEIGHTED strategy a TIER_1 borrower goes to the
    AGGRESSIVE lender (+50 appetite bonus at equal utilization).
    """
    moderate = Lender(
        name="Alpha Capital",
        is_active=True,
        capital_limit=Decimal("50000000"),
        capital_utilized=Decimal("0"),
        risk_appetite=RiskAppetite.MODERATE.value,
    )
    moderate.products.append(_product("Alpha Salary Advance", ["TIER_1", "TIER_2", "TIER_3"]))
    aggressive = Lender(
        name="Beta Finance",
        is_active=True,
        capital_limit=Decimal("20000000"),
        capital_utilized=Decimal("0"),
        risk_appetite=RiskAppetite.AGGRESSIVE.value,
    )
    aggressive.products.append(_product("Beta Checkout Credit", ["TIER_1", "TIER_2", "TIER_3"]))
    session.add_all([moderate, aggressive])
    session.flush()

    employer = Employer(name="Acme Uganda Ltd", is_active=True)
    session.add(employer)
    session.flush()

    employee = Employee(
        employer_id=employer.id,
        full_name="Grace Namubiru",
        phone=EMPLOYEE_PHONE,
        national_id="CM90001234ABCD",
        net_salary=Decimal("1000000"),
        risk_tier=RiskTier.TIER_1.value,
        deduction_limit=None,
        external_monthly_deductions=Decimal("0"),
        is_active=True,
    )
    second = Employee(
        employer_id=employer.id,
        full_name="Peter Okello",
        phone=SECOND_EMPLOYEE_PHONE,
        national_id="CM90005678EFGH",
        net_salary=Decimal("1000000"),
        risk_tier=RiskTier.TIER_1.value,
        deduction_limit=None,
        external_monthly_deductions=Decimal("0"),
        is_active=True,
    )
    merchant = Merchant(name="Kampala Electronics", is_active=True)
    session.add_all([employee, second, merchant])
    session.flush()

    return SeedData(employer, employee, second, merchant, moderate, aggressive)


@pytest.fixture
def seed(session) -> SeedData:
    return seed_parties(session)


# =============================================================================
# Services and flow helpers
# =============================================================================


@pytest.fixture
def checkout_service(session, crb, policy, deterministic_clock) -> CheckoutService:
    return CheckoutService(session, crb, TOKEN_SECRET, policy=policy, clock=deterministic_clock)


@pytest.fixture
def settlement_service(session, escrow, policy, deterministic_clock) -> SettlementService:
    return SettlementService(session, escrow, policy=policy, clock=deterministic_clock)


@pytest.fixture
def checkout(checkout_service, seed):
    """Authorize a checkout; returns the CheckoutResult."""

    def _checkout(
        amount: str = "200000",
        tenor_days: int = 90,
        phone: str = EMPLOYEE_PHONE,
        key: str | None = None,
        strategy=None,
    ):
        return checkout_service.authorize(
            CheckoutRequest(
                merchant_id=seed.merchant.id,
                customer_phone=phone,
                order_amount=Decimal(amount),
                tenor_days=tenor_days,
                idempotency_key=key or f"co-{uuid4()}",
                strategy=strategy,
            ),
            actor_id=TEST_ACTOR_ID,
        )

    return _checkout


@pytest.fixture
def authorized_contract(checkout, checkout_service):
    """A contract in CUSTOMER_AUTHORIZED; returns its id."""

    def _authorized(amount: str = "200000", tenor_days: int = 90, phone: str = EMPLOYEE_PHONE) -> UUID:
        result = checkout(amount=amount, tenor_days=tenor_days, phone=phone)
        contract_id = UUID(result.contract_id)
        checkout_service.confirm_authorization(contract_id, result.auth_token, TEST_ACTOR_ID)
        return contract_id

    return _authorized


@pytest.fixture
def funded_contract(authorized_contract, settlement_service):
    """A contract held and released into IN_REPAYMENT; returns its id."""

    def _funded(amount: str = "200000", tenor_days: int = 90, phone: str = EMPLOYEE_PHONE) -> UUID:
        contract_id = authorized_contract(amount=amount, tenor_days=tenor_days, phone=phone)
        settlement_service.hold_funds(contract_id, f"hold-{contract_id}", actor_id=TEST_ACTOR_ID)
        settlement_service.release_funds(contract_id, f"release-{contract_id}", actor_id=TEST_ACTOR_ID)
        return contract_id

    return _funded
