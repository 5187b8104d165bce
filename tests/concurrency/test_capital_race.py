"""
Concurrent checkouts against a shared lender pool.

Runs on a file-backed SQLite database so each worker has its own
connection.  Set BNPL_TEST_DATABASE_URL to point the suite elsewhere.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bnpl_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from bnpl_kernel.exceptions import BnplError
from bnpl_kernel.models.contract import Contract
from bnpl_kernel.models.lender import Lender, LenderProduct, RiskAppetite
from bnpl_kernel.models.party import Employee, Employer, Merchant, RiskTier
from bnpl_services.checkout_service import CheckoutRequest, CheckoutService
from tests.conftest import TOKEN_SECRET

WORKERS = 6


@pytest.fixture
def file_session_factory(tmp_path):
    url = os.environ.get("BNPL_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'race.db'}"
    init_engine_from_url(url)
    drop_tables()
    create_tables()
    yield get_session_factory()
    reset_engine()


@pytest.fixture
def small_pool(file_session_factory):
    """One lender with room for two 200,000 orders, and a borrower per worker."""
    with file_session_factory() as s:
        lender = Lender(
            name="Gamma Microcredit",
            is_active=True,
            capital_limit=Decimal("500000"),
            capital_utilized=Decimal("0"),
            risk_appetite=RiskAppetite.AGGRESSIVE.value,
        )
        lender.products.append(LenderProduct(
            name="Gamma Checkout",
            min_amount=Decimal("10000"),
            max_amount=Decimal("1000000"),
            tenor_limit_days=180,
            risk_tier_eligibility=["TIER_1", "TIER_2", "TIER_3"],
            is_active=True,
        ))
        employer = Employer(name="Mbarara Dairy Co", is_active=True)
        merchant = Merchant(name="Gulu Hardware", is_active=True)
        s.add_all([lender, employer, merchant])
        s.flush()
        phones = []
        for n in range(WORKERS):
            phone = f"+2567710000{n:02d}"
            s.add(Employee(
                employer_id=employer.id,
                full_name=f"Worker {n}",
                phone=phone,
                national_id=f"CM9100{n:04d}RACE",
                net_salary=Decimal("1000000"),
                risk_tier=RiskTier.TIER_1.value,
                deduction_limit=None,
                external_monthly_deductions=Decimal("0"),
                is_active=True,
            ))
            phones.append(phone)
        s.commit()
        return lender.id, merchant.id, phones


def _run_checkouts(session_factory, crb, policy, clock, requests):
    barrier = threading.Barrier(len(requests))

    def _worker(request):
        session = session_factory()
        try:
            service = CheckoutService(session, crb, TOKEN_SECRET, policy=policy, clock=clock)
            barrier.wait(timeout=10)
            result = service.authorize(request)
            session.commit()
            return result
        except BnplError as exc:
            session.rollback()
            return exc
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(requests)) as pool:
        return list(pool.map(_worker, requests))


class TestCapitalRace:

    def test_concurrent_checkouts_never_overdraw_capital(
        self, file_session_factory, small_pool, crb, policy, deterministic_clock,
    ):
        lender_id, merchant_id, phones = small_pool
        requests = [
            CheckoutRequest(
                merchant_id=merchant_id,
                customer_phone=phone,
                order_amount=Decimal("200000"),
                tenor_days=90,
                idempotency_key=f"race-{phone}",
            )
            for phone in phones
        ]

        outcomes = _run_checkouts(file_session_factory, crb, policy, deterministic_clock, requests)

        approved = [o for o in outcomes if not isinstance(o, BnplError)]
        rejected = [o for o in outcomes if isinstance(o, BnplError)]
        assert len(approved) == 2
        assert {e.code for e in rejected} <= {
            "NO_ELIGIBLE_LENDER", "CAPITAL_EXHAUSTED", "OPTIMISTIC_LOCK_CONFLICT",
        }

        with file_session_factory() as s:
            lender = s.get(Lender, lender_id)
            contracts = s.execute(select(func.count()).select_from(Contract)).scalar_one()
            assert Decimal(lender.capital_utilized) == Decimal("400000")
            assert lender.capital_utilized <= lender.capital_limit
            assert contracts == 2

    def test_concurrent_replays_create_one_contract(
        self, file_session_factory, small_pool, crb, policy, deterministic_clock,
    ):
        lender_id, merchant_id, phones = small_pool
        request = CheckoutRequest(
            merchant_id=merchant_id,
            customer_phone=phones[0],
            order_amount=Decimal("200000"),
            tenor_days=90,
            idempotency_key="race-same-key",
        )

        outcomes = _run_checkouts(file_session_factory, crb, policy, deterministic_clock, [request] * 4)

        assert all(not isinstance(o, BnplError) for o in outcomes)
        assert len({o.contract_id for o in outcomes}) == 1
        assert sum(1 for o in outcomes if o.replayed) == 3

        with file_session_factory() as s:
            assert Decimal(s.get(Lender, lender_id).capital_utilized) == Decimal("200000")
