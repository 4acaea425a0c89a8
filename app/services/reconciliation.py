# app/services/reconciliation.py
"""
Daily reconciliation jobs.

Each job is a first-class object: it gets a session factory and a clock
injected, keeps "last run" bookkeeping in `job_runs`, and refuses to start
while another run of the same job holds the claim. Every record is written
with its own conditional UPDATE + commit, so one bad loan never aborts a
batch and a failed record simply stays as it was until the next run.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import config
from app.core.clock import as_utc, to_db
from app.models.job_run_model import JobRun
from app.models.loan_model import Loan
from app.services.notifications import NotificationGateway
from app.services.policy_settings import load_policy
from app.utils.penalty_policy import days_late, late_fee

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    job: str
    ran: bool = True
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    capped: bool = False
    reason: Optional[str] = None
    failed_ids: List[int] = field(default_factory=list)


def parse_run_at(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


class ScheduledJob(ABC):
    name = "job"

    def __init__(
            self,
            session_factory: Callable[[], Session],
            clock,
            run_at: time,
            tz_name: str = config.APP_TIMEZONE,
            batch_size: int = config.RECONCILE_BATCH_SIZE,
            max_batches: int = config.RECONCILE_MAX_BATCHES,
            lease_minutes: int = config.JOB_LEASE_MINUTES,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.run_at = run_at
        self.tz = ZoneInfo(tz_name)
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.lease = timedelta(minutes=lease_minutes)
        self._local_lock = threading.Lock()

    # ---------------------------
    # calendar helpers
    # ---------------------------
    def local_date(self, now: datetime) -> date:
        return as_utc(now).astimezone(self.tz).date()

    def trigger_time(self, day: date) -> datetime:
        return datetime.combine(day, self.run_at, tzinfo=self.tz)

    # ---------------------------
    # bookkeeping
    # ---------------------------
    def _job_row(self, db: Session) -> JobRun:
        row = db.query(JobRun).filter(JobRun.job_name == self.name).first()
        if row:
            return row
        db.add(JobRun(job_name=self.name, is_running=False))
        try:
            db.commit()
        except IntegrityError:
            # created concurrently
            db.rollback()
        return db.query(JobRun).filter(JobRun.job_name == self.name).first()

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or self.clock.now()
        today = self.local_date(now)
        if as_utc(now) < self.trigger_time(today):
            return False
        db = self.session_factory()
        try:
            row = self._job_row(db)
            return row.last_run_date != today
        finally:
            db.close()

    def _claim(self, db: Session, now: datetime) -> bool:
        self._job_row(db)
        stale_before = to_db(now - self.lease)
        claimed = (
            db.query(JobRun)
            .filter(
                JobRun.job_name == self.name,
                or_(JobRun.is_running.is_(False), JobRun.last_started_at < stale_before),
            )
            .update(
                {JobRun.is_running: True, JobRun.last_started_at: to_db(now)},
                synchronize_session=False,
            )
        )
        db.commit()
        return claimed == 1

    def _release(
            self,
            db: Session,
            now: datetime,
            result: Optional[JobResult],
            error: Optional[str],
            mark_day: bool = True,
    ) -> None:
        values = {
            JobRun.is_running: False,
            JobRun.last_finished_at: to_db(self.clock.now()),
            JobRun.last_error: error,
        }
        if result is not None:
            values.update(
                {
                    JobRun.processed: result.processed,
                    JobRun.failed: result.failed,
                    JobRun.skipped: result.skipped,
                }
            )
            # only a scheduled run counts as "done for today"
            if mark_day:
                values[JobRun.last_run_date] = self.local_date(now)
        db.query(JobRun).filter(JobRun.job_name == self.name).update(values, synchronize_session=False)
        db.commit()

    # ---------------------------
    # run
    # ---------------------------
    def run(self, now: Optional[datetime] = None, mark_day: bool = True) -> JobResult:
        """
        Claim, execute, release. `mark_day=False` is used for manual runs so
        they never stand in for the scheduled run of that day.
        """
        now = now or self.clock.now()

        if not self._local_lock.acquire(blocking=False):
            logger.warning("%s already running in this process, skipping", self.name)
            return JobResult(job=self.name, ran=False, reason="already_running")

        db = self.session_factory()
        try:
            if not self._claim(db, now):
                logger.warning("%s is claimed by another run, skipping", self.name)
                return JobResult(job=self.name, ran=False, reason="already_running")

            logger.info("%s started as_of=%s", self.name, as_utc(now).isoformat())
            try:
                result = self.execute(db, now)
            except Exception as e:
                db.rollback()
                logger.exception("%s aborted", self.name)
                self._release(db, now, None, f"{type(e).__name__}: {e}"[:2000])
                raise

            self._release(db, now, result, None, mark_day=mark_day)
            logger.info(
                "%s finished processed=%s failed=%s skipped=%s capped=%s",
                self.name, result.processed, result.failed, result.skipped, result.capped,
            )
            return result
        finally:
            db.close()
            self._local_lock.release()

    @abstractmethod
    def execute(self, db: Session, now: datetime) -> JobResult:
        ...


class OverdueFeeJob(ScheduledJob):
    """
    Keeps the displayed fee of still-outstanding overdue loans current.
    Bans are deliberately left alone: they are only escalated on return.
    """
    name = "overdue_fees"

    def _update_fee(self, db: Session, loan_id: int, late: int, fee) -> int:
        return (
            db.query(Loan)
            .filter(Loan.loan_id == loan_id, Loan.is_returned.is_(False))
            .update({Loan.days_late: late, Loan.fee_amount: fee}, synchronize_session=False)
        )

    def _pending(self, db: Session, now: datetime, last_id: int):
        return (
            db.query(Loan.loan_id, Loan.due_date)
            .filter(
                Loan.is_returned.is_(False),
                Loan.due_date < to_db(now),
                Loan.loan_id > last_id,
            )
            .order_by(Loan.loan_id.asc())
        )

    def execute(self, db, now):
        result = JobResult(job=self.name)
        policy = load_policy(db)
        last_id = 0

        for _ in range(self.max_batches):
            rows = self._pending(db, now, last_id).limit(self.batch_size).all()
            if not rows:
                break

            for row in rows:
                last_id = row.loan_id
                late = days_late(row.due_date, now)
                fee = late_fee(late, policy.fee_per_day)
                try:
                    if self._update_fee(db, row.loan_id, late, fee) == 1:
                        result.processed += 1
                    else:
                        # returned in the meantime
                        result.skipped += 1
                    db.commit()
                except SQLAlchemyError:
                    db.rollback()
                    result.failed += 1
                    result.failed_ids.append(row.loan_id)
                    logger.exception("Late fee update failed for loan %s", row.loan_id)
        else:
            result.capped = self._pending(db, now, last_id).first() is not None

        if result.capped:
            logger.warning(
                "%s hit the batch cap (%s x %s); remaining loans wait for the next run",
                self.name, self.max_batches, self.batch_size,
            )

        return result


class ReminderJob(ScheduledJob):
    """
    One "due tomorrow" mail per loan. `reminder_sent` is the only guard:
    it is flipped right after a successful send and left false on failure.
    """
    name = "due_reminders"

    def __init__(self, session_factory, clock, run_at, notifier: NotificationGateway, **kwargs):
        super().__init__(session_factory, clock, run_at, **kwargs)
        self.notifier = notifier

    def tomorrow_window(self, now: datetime):
        tomorrow = self.local_date(now) + timedelta(days=1)
        start = datetime.combine(tomorrow, time.min, tzinfo=self.tz)
        end = datetime.combine(tomorrow + timedelta(days=1), time.min, tzinfo=self.tz)
        return start, end

    def _mark_sent(self, db: Session, loan_id: int) -> int:
        return (
            db.query(Loan)
            .filter(Loan.loan_id == loan_id, Loan.reminder_sent.is_(False))
            .update({Loan.reminder_sent: True}, synchronize_session=False)
        )

    def _pending(self, db: Session, now: datetime, last_id: int):
        start, end = self.tomorrow_window(now)
        return (
            db.query(Loan)
            .filter(
                Loan.is_returned.is_(False),
                Loan.reminder_sent.is_(False),
                Loan.due_date >= to_db(start),
                Loan.due_date < to_db(end),
                Loan.loan_id > last_id,
            )
            .order_by(Loan.loan_id.asc())
        )

    def execute(self, db, now):
        result = JobResult(job=self.name)
        last_id = 0

        for _ in range(self.max_batches):
            loans = self._pending(db, now, last_id).limit(self.batch_size).all()
            if not loans:
                break

            for loan in loans:
                last_id = loan.loan_id
                email = loan.user.email if loan.user else None
                title = loan.book.title if loan.book else "Unknown"
                if not email:
                    result.skipped += 1
                    logger.warning("No email for loan %s, reminder skipped", loan.loan_id)
                    continue

                try:
                    self.notifier.send_reminder(email, title, as_utc(loan.due_date))
                except Exception:
                    result.failed += 1
                    result.failed_ids.append(loan.loan_id)
                    logger.exception("Reminder for loan %s to %s failed", loan.loan_id, email)
                    continue

                try:
                    self._mark_sent(db, loan.loan_id)
                    db.commit()
                    result.processed += 1
                except SQLAlchemyError:
                    db.rollback()
                    result.failed += 1
                    result.failed_ids.append(loan.loan_id)
                    logger.exception(
                        "Reminder for loan %s was sent but reminder_sent could not be stored",
                        loan.loan_id,
                    )
        else:
            result.capped = self._pending(db, now, last_id).first() is not None

        if result.capped:
            logger.warning("%s hit the batch cap, remaining reminders wait for the next run", self.name)

        return result
