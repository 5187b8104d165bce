"""
Tests for the scheduler runner script.

The container is built from the test doubles; ``--once`` runs every
default job in a single tick against the per-test database.
"""

import pytest
from sqlalchemy import func, select

import bnpl_api.app
from bnpl_api.deps import ApiContainer
from bnpl_kernel.models.reconciliation import ReconciliationRecord
from scripts.run_scheduler import build_scheduler, main
from tests.conftest import TOKEN_SECRET, seed_parties


@pytest.fixture
def container(session_factory, escrow, ledger, crb, event_bus, policy, deterministic_clock):
    with session_factory() as s:
        seed_parties(s)
        s.commit()
    return ApiContainer(
        session_factory=session_factory,
        crb=crb,
        escrow=escrow,
        ledger=ledger,
        event_bus=event_bus,
        policy=policy,
        clock=deterministic_clock,
        token_secret=TOKEN_SECRET,
    )


def _records(session_factory) -> int:
    with session_factory() as s:
        return s.execute(select(func.count()).select_from(ReconciliationRecord)).scalar_one()


class TestBuildScheduler:

    def test_runs_the_default_jobs(self, container, session_factory):
        scheduler = build_scheduler(container, tick_interval_seconds=5)

        assert scheduler.tick() == 3
        assert _records(session_factory) == 3

    def test_scheduler_is_not_started(self, container):
        assert build_scheduler(container).is_running is False


class TestMain:

    def test_once_runs_every_job_and_exits(self, container, session_factory, monkeypatch, capsys):
        monkeypatch.setenv("BNPL_AUTH_TOKEN_SECRET", TOKEN_SECRET)
        monkeypatch.setattr(bnpl_api.app, "container_from_settings", lambda settings: container)

        assert main(["--once"]) == 0

        assert "3/3 jobs completed" in capsys.readouterr().out
        assert _records(session_factory) == 3

    def test_missing_secret_is_fatal(self, monkeypatch, tmp_path):
        monkeypatch.delenv("BNPL_AUTH_TOKEN_SECRET", raising=False)
        monkeypatch.chdir(tmp_path)

        with pytest.raises(RuntimeError, match="BNPL_AUTH_TOKEN_SECRET"):
            main(["--once"])
