# app/models/job_run_model.py
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, Text
from app.utils.database import Base


class JobRun(Base):
    """
    One row per scheduled job: "last run" bookkeeping and the overlap guard.
    `is_running` is claimed with a conditional UPDATE before a run starts.
    """
    __tablename__ = "job_runs"

    job_name = Column(String(50), primary_key=True)

    is_running = Column(Boolean, nullable=False, default=False, server_default="false")

    # local calendar date (APP_TIMEZONE) of the last completed run
    last_run_date = Column(Date, nullable=True)
    last_started_at = Column(DateTime, nullable=True)
    last_finished_at = Column(DateTime, nullable=True)

    processed = Column(Integer, nullable=False, default=0, server_default="0")
    failed = Column(Integer, nullable=False, default=0, server_default="0")
    skipped = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
