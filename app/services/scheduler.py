# app/services/scheduler.py
import logging
import threading
from typing import Dict, List, Optional

from app.core import config
from app.core.clock import SystemClock
from app.services.notifications import NotificationGateway, build_notifier
from app.services.reconciliation import (
    JobResult,
    OverdueFeeJob,
    ReminderJob,
    ScheduledJob,
    parse_run_at,
)
from app.utils.database import SessionLocal

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """
    Fires each job once per local day, as soon as its trigger time has passed.
    Because "already ran today" is read from job_runs, a restart after the
    trigger time catches up instead of waiting for tomorrow.
    """

    def __init__(self, jobs: List[ScheduledJob], clock, poll_seconds: int = config.SCHEDULER_POLL_SECONDS):
        self.jobs: Dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self.clock = clock
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self.jobs.get(name)

    def tick(self) -> List[JobResult]:
        now = self.clock.now()
        results = []
        for job in self.jobs.values():
            try:
                if job.is_due(now):
                    results.append(job.run(now))
            except Exception:
                logger.exception("Scheduled run of %s failed", job.name)
        return results

    def _loop(self):
        logger.info("Reconciliation scheduler started (poll every %ss)", self.poll_seconds)
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.poll_seconds)
        logger.info("Reconciliation scheduler stopped")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


def build_scheduler(
        session_factory=SessionLocal,
        clock=None,
        notifier: Optional[NotificationGateway] = None,
) -> ReconciliationScheduler:
    clock = clock or SystemClock()
    notifier = notifier or build_notifier()
    jobs = [
        OverdueFeeJob(session_factory, clock, parse_run_at(config.OVERDUE_JOB_AT)),
        ReminderJob(session_factory, clock, parse_run_at(config.REMINDER_JOB_AT), notifier=notifier),
    ]
    return ReconciliationScheduler(jobs, clock)
