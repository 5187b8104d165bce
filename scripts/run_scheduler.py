#!/usr/bin/env python3
"""
Run the recurring BNPL jobs until interrupted: outbox dispatch (settlement
retries, loan booking, repayment forwarding), overdue flagging and the
daily reconciliation.

Reads the same environment as the API (BNPL_DATABASE_URL,
BNPL_AUTH_TOKEN_SECRET, BNPL_LOG_LEVEL, BNPL_POLICY_PATH; a ``.env`` file
is honoured).

Usage:
  python3 scripts/run_scheduler.py [--tick-seconds N] [--once]
"""

import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_scheduler(container, tick_interval_seconds: int = 30):
    """JobScheduler over the default schedule, wired from an ApiContainer."""
    from bnpl_batch import JobScheduler, default_schedule

    return JobScheduler(
        container.session_factory,
        default_schedule(container.jobs()),
        clock=container.clock,
        tick_interval_seconds=tick_interval_seconds,
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run BNPL background jobs")
    p.add_argument(
        "--tick-seconds",
        type=int,
        default=30,
        help="Seconds between scheduler ticks (default: 30)",
    )
    p.add_argument(
        "--once",
        action="store_true",
        help="Run every job once and exit",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from bnpl_api.app import container_from_settings
    from bnpl_api.settings import ApiSettings
    from bnpl_batch import default_schedule

    container = container_from_settings(ApiSettings.from_env())
    scheduler = build_scheduler(container, args.tick_seconds)

    if args.once:
        succeeded = scheduler.tick()
        total = len(default_schedule(container.jobs()))
        print(f"  {succeeded}/{total} jobs completed")
        return 0 if succeeded == total else 1

    scheduler.start()
    print(f"  Scheduler running (tick every {args.tick_seconds}s); Ctrl-C to stop")
    try:
        while scheduler.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("  Stopping scheduler...")
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
