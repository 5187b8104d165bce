"""
JobScheduler -- in-process polling scheduler for the recurring jobs.

Contract:
    ``tick()`` runs every job whose interval has elapsed, each in its own
    session: commit on success, rollback and log on failure.  ``start()`` /
    ``stop()`` run ``tick()`` on a background thread.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - ``is_due`` is pure.
    - A failing job never stops the others or the loop.
    - Stop is honored between jobs; the current job always completes.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from bnpl_kernel.domain.clock import Clock, SystemClock
from bnpl_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.scheduler")


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    interval: timedelta
    run: Callable[[Session], Any]


def is_due(last_run_at: datetime | None, interval: timedelta, now: datetime) -> bool:
    return last_run_at is None or now - last_run_at >= interval


class JobScheduler:
    """
    Non-goals:
        - NOT a distributed scheduler (no leader election).
        - Last-run times live in memory; a restart runs every job once.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        jobs: list[ScheduledJob],
        clock: Clock | None = None,
        tick_interval_seconds: int = 30,
    ):
        self._session_factory = session_factory
        self._jobs = list(jobs)
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._last_run: dict[str, datetime] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Run due jobs; returns how many ran successfully."""
        succeeded = 0
        for job in self._jobs:
            if self._stop_event.is_set():
                break
            now = self._clock.now()
            if not is_due(self._last_run.get(job.name), job.interval, now):
                continue
            self._last_run[job.name] = now
            if self._run_job(job):
                succeeded += 1
        return succeeded

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="bnpl-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)

    def _run_job(self, job: ScheduledJob) -> bool:
        session = self._session_factory()
        try:
            with LogContext.bind(correlation_id=f"job-{job.name}"):
                result = job.run(session)
                session.commit()
                logger.info("job_completed", extra={"job_name": job.name, "result": repr(result)})
            return True
        except Exception:
            session.rollback()
            logger.exception("job_failed", extra={"job_name": job.name})
            return False
        finally:
            session.close()
