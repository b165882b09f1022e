"""
Scheduler — periodic cleanup of expired challenges, codes and tokens.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

Expired records are already rejected at read time; the job only keeps the
store from growing. Each run executes within a LoggingExecutionContext for
timing and success/failure logging.

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

log = structlog.get_logger()

JOB_ID = "pki_auth_cleanup"


def create_scheduler(
    cleanup_fn: Callable[[], Result[int]],
    cron: str = "*/15 * * * *",
    run_on_startup: bool = False,
    register_signals: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that runs the cleanup on a cron schedule.

    Args:
        cleanup_fn: Zero-argument callable returning the number of records deleted.
        cron: Standard 5-field cron expression (minute hour dom month dow).
              Default "*/15 * * * *" runs every 15 minutes.
        run_on_startup: If True, execute once immediately before entering the loop.
        register_signals: Install SIGINT/SIGTERM handlers. Only possible from
              the main thread, so the ASGI lifespan passes False.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="ExpiredRecordCleanup")

    def _job() -> None:
        result = ctx.execute(cleanup_fn)
        if result.is_success():
            log.info("scheduler.job_completed", records_deleted=result.value())
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))

    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        _job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id=JOB_ID,
        name="Expired challenge/code/token cleanup",
        replace_existing=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Running cleanup immediately on startup")
        _job()

    if register_signals:
        _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
