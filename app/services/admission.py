# app/services/admission.py
import logging
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, to_db
from app.models.book_model import Book
from app.models.loan_model import Loan
from app.models.user_model import User
from app.services.errors import (
    ActiveLoanLimitReached,
    Banned,
    InvalidDueDate,
    ItemUnavailable,
    LoanRejection,
    RoleForbidden,
    TransientInfrastructureFailure,
    UnpaidFeeOutstanding,
    UserNotFound,
)
from app.services.policy_settings import load_policy
from app.utils.penalty_policy import PenaltyPolicy, ban_days_remaining, is_banned, money

logger = logging.getLogger(__name__)


def parse_due_date(value: Union[str, datetime, None], now: datetime) -> datetime:
    """Aware UTC due date strictly after `now`, or InvalidDueDate."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidDueDate("missing")

    if isinstance(value, datetime):
        due = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            due = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidDueDate("unparseable")

    try:
        due = as_utc(due)
    except (OverflowError, ValueError):
        # e.g. 9999-12-31T23:00-05:00 is past datetime.max once in UTC
        raise InvalidDueDate("unparseable")
    if due <= as_utc(now):
        raise InvalidDueDate("not_in_future")
    return due


def check_admission(
        db: Session,
        user: User,
        book_id: int,
        requested_due_date,
        now: datetime,
        policy: PenaltyPolicy,
) -> datetime:
    """
    Runs every borrow rule in order and raises the first rejection.
    Returns the parsed due date when the request may proceed.
    """
    # 1) role
    if user.is_admin:
        raise RoleForbidden(user.role)

    # 2) ban
    if is_banned(user.ban_until, user.is_permanent_ban, now):
        until = as_utc(user.ban_until) if user.ban_until else None
        raise Banned(until, bool(user.is_permanent_ban), ban_days_remaining(user.ban_until, now))

    # 3) active loan cap
    active = (
        db.query(func.count(Loan.loan_id))
        .filter(Loan.user_id == user.user_id, Loan.is_returned.is_(False))
        .scalar()
    )
    if active >= policy.max_active_loans:
        raise ActiveLoanLimitReached(policy.max_active_loans, active)

    # 4) unpaid fees
    unpaid = (
        db.query(Loan.loan_id, Loan.fee_amount)
        .filter(
            Loan.user_id == user.user_id,
            Loan.fee_amount > 0,
            Loan.fee_paid.is_(False),
        )
        .all()
    )
    if unpaid:
        total = money(sum((money(r.fee_amount) for r in unpaid), money(0)))
        raise UnpaidFeeOutstanding(total, policy.currency, [r.loan_id for r in unpaid])

    # 5) item
    book = db.query(Book).filter(Book.book_id == book_id).first()
    if not book or not book.available:
        raise ItemUnavailable(book_id)

    # 6) due date
    return parse_due_date(requested_due_date, now)


def try_borrow(
        db: Session,
        user_id: int,
        book_id: int,
        requested_due_date,
        now: datetime,
        policy: Optional[PenaltyPolicy] = None,
) -> Loan:
    try:
        if policy is None:
            policy = load_policy(db)

        user = db.query(User).filter(User.user_id == user_id).first()
        if not user:
            raise UserNotFound(user_id)

        due = check_admission(db, user, book_id, requested_due_date, now, policy)

        # flip availability only if still available; a lost race is a plain rejection
        flipped = (
            db.query(Book)
            .filter(Book.book_id == book_id, Book.available.is_(True))
            .update({Book.available: False}, synchronize_session=False)
        )
        if flipped != 1:
            db.rollback()
            raise ItemUnavailable(book_id)

        loan = Loan(
            user_id=user_id,
            book_id=book_id,
            loan_date=to_db(now),
            due_date=to_db(due),
            is_returned=False,
            days_late=0,
            fee_amount=money(0),
            fee_paid=False,
            reminder_sent=False,
        )
        db.add(loan)
        db.flush()
        db.commit()
        db.refresh(loan)

    except LoanRejection as rejection:
        db.rollback()
        logger.info(
            "Borrow rejected user=%s book=%s code=%s detail=%s",
            user_id, book_id, rejection.code, rejection.detail,
        )
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Borrow failed user=%s book=%s", user_id, book_id)
        raise TransientInfrastructureFailure("borrow", e) from e

    logger.info(
        "Loan %s created user=%s book=%s due=%s", loan.loan_id, user_id, book_id, loan.due_date
    )
    return loan
