from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.models.job_run_model import JobRun
from app.schemas.loan_schema import JobResultOut, JobRunOut
from app.utils.database import get_db
from app.utils.dependencies import require_admin

router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(require_admin)])


@router.get("", response_model=list[JobRunOut])
def list_job_runs(db: Session = Depends(get_db)):
    return db.query(JobRun).order_by(JobRun.job_name.asc()).all()


# ------------------------------
# Manual trigger; same overlap guard as the scheduled run
# ------------------------------
@router.post("/{job_name}/run", response_model=JobResultOut)
def run_job(job_name: str, request: Request):
    job = request.app.state.scheduler.get_job(job_name)
    if not job:
        raise HTTPException(404, "Job not found")
    return job.run(mark_day=False)
