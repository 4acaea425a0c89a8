from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from starlette import status

from app.models.loan_model import Loan
from app.models.user_model import User
from app.schemas.loan_schema import (
    BorrowRequest,
    LateFeeHistoryOut,
    LateFeeStatsOut,
    LoanOut,
    ReturnOut,
)
from app.services import loan_ledger
from app.services.admission import try_borrow
from app.utils.database import get_db
from app.utils.dependencies import get_clock, get_current_user, require_admin

router = APIRouter(prefix="/loans", tags=["Loans"])


def _load_visible_loan(db: Session, loan_id: int, user: User) -> Loan:
    loan = db.query(Loan).filter(Loan.loan_id == loan_id).first()
    if not loan:
        raise HTTPException(404, "Loan not found")
    if loan.user_id != user.user_id and not user.is_admin:
        raise HTTPException(403, "Forbidden")
    return loan


# =================================================
# STATIC ROUTES (ALWAYS FIRST)
# =================================================
@router.post("/borrow", response_model=LoanOut, status_code=status.HTTP_201_CREATED)
def borrow_book(
        payload: BorrowRequest,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        clock=Depends(get_clock),
):
    return try_borrow(db, user.user_id, payload.book_id, payload.due_date, clock.now())


@router.get("/mine", response_model=list[LoanOut])
def my_loans(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return loan_ledger.list_user_loans(db, user.user_id)


@router.get("/my-late-fees", response_model=LateFeeHistoryOut)
def my_late_fees(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return loan_ledger.late_fee_history(db, user.user_id)


@router.get("/admin/all", response_model=list[LoanOut], dependencies=[Depends(require_admin)])
def all_loans(
        is_returned: Optional[bool] = Query(None),
        limit: int = 50,
        offset: int = 0,
        db: Session = Depends(get_db),
):
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    return loan_ledger.list_loans(db, is_returned=is_returned, limit=limit, offset=offset)


@router.get("/admin/stats", response_model=LateFeeStatsOut, dependencies=[Depends(require_admin)])
def late_fee_stats(db: Session = Depends(get_db), clock=Depends(get_clock)):
    return loan_ledger.late_fee_stats(db, clock.now())


# =================================================
# DYNAMIC ROUTES (LAST)
# =================================================
@router.put("/return/{loan_id}", response_model=ReturnOut)
def return_book(
        loan_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        clock=Depends(get_clock),
):
    _load_visible_loan(db, loan_id, user)
    result = loan_ledger.return_loan(db, loan_id, clock.now())
    return ReturnOut(
        message=result.message,
        loan=LoanOut.model_validate(result.loan),
        days_late=result.days_late,
        fee_amount=float(result.fee_amount),
        currency=result.currency,
        ban_until=result.ban_until,
        settlement_required=result.settlement_required,
    )


@router.get("/{loan_id}", response_model=LoanOut)
def get_loan(loan_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _load_visible_loan(db, loan_id, user)
