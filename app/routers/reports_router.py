from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.core import config
from app.schemas.loan_schema import OverdueRowOut, PopularBookOut
from app.services.loan_ledger import overdue_loans
from app.services.popular_books import popular_books
from app.utils.database import get_db
from app.utils.dependencies import get_clock, require_admin

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/overdue", response_model=list[OverdueRowOut], dependencies=[Depends(require_admin)])
def overdue_report(db: Session = Depends(get_db), clock=Depends(get_clock)):
    # fee values are as of the last overdue-fee run
    return overdue_loans(db, clock.now())


@router.get("/popular-books", response_model=list[PopularBookOut])
def popular_books_report(
        request: Request,
        days: int = Query(config.DEFAULT_POPULAR_DAYS, ge=1, le=365),
        limit: int = Query(config.DEFAULT_POPULAR_LIMIT, ge=1),
        db: Session = Depends(get_db),
        clock=Depends(get_clock),
):
    limit = min(limit, config.MAX_POPULAR_LIMIT)
    cache = request.app.state.popular_cache
    since = clock.now() - timedelta(days=days)
    return cache.get_or_compute((days, limit), lambda: popular_books(db, since, limit))
