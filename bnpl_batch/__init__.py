"""
bnpl_batch -- background work: outbox dispatch, daily reconciliation and
overdue flagging, driven by an in-process polling scheduler.
"""

from datetime import timedelta

from bnpl_batch.jobs import BnplJobs, ReconciliationRunReport
from bnpl_batch.outbox import DispatchReport, OutboxDispatcher, backoff_seconds, build_handlers
from bnpl_batch.scheduler import JobScheduler, ScheduledJob, is_due


def default_schedule(jobs: BnplJobs) -> list[ScheduledJob]:
    return [
        ScheduledJob("outbox_dispatch", timedelta(seconds=30), jobs.dispatch_outbox),
        ScheduledJob("mark_overdue", timedelta(hours=1), jobs.flag_overdue),
        ScheduledJob("daily_reconciliation", timedelta(days=1), jobs.reconcile_daily),
    ]


__all__ = [
    "BnplJobs",
    "DispatchReport",
    "JobScheduler",
    "OutboxDispatcher",
    "ReconciliationRunReport",
    "ScheduledJob",
    "backoff_seconds",
    "build_handlers",
    "default_schedule",
    "is_due",
]
