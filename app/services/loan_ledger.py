# app/services/loan_ledger.py
"""
Loan state transitions after creation: return, fee settlement, plus the
read-side queries over loans (borrower history, admin stats, overdue list).

Return applies three writes in order. The loan row is the durability anchor:
once it is committed as returned, a failure to extend the ban or to free the
book is logged as a recoverable inconsistency and the return still succeeds.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, to_db
from app.models.book_model import Book
from app.models.loan_model import Loan
from app.models.user_model import User
from app.services.errors import (
    AlreadyReturned,
    FeeNotSettleable,
    InvariantViolation,
    LoanNotFound,
    LoanRejection,
    NoFeeOwed,
    TransientInfrastructureFailure,
)
from app.services.notifications import NotificationGateway
from app.services.policy_settings import load_policy
from app.utils.penalty_policy import PenaltyPolicy, days_late, extend_ban, late_fee, money

logger = logging.getLogger(__name__)

BAN_UPDATE_ATTEMPTS = 3


@dataclass
class ReturnResult:
    loan: Loan
    days_late: int
    fee_amount: Decimal
    currency: str
    ban_until: Optional[datetime]
    settlement_required: bool
    message: str


def fee_summary(late: int, fee: Decimal, currency: str, ban_until: Optional[datetime]) -> str:
    if late <= 0:
        return "Book successfully returned."
    text = f"Book returned {late} day(s) late. Late fee: {fee} {currency}."
    if ban_until is not None:
        text += f" Borrowing is suspended until {as_utc(ban_until):%Y-%m-%d}."
    return text


# -------------------------------------------------
# Return
# -------------------------------------------------
def _apply_ban(db: Session, user_id: int, late: int, now: datetime, multiplier: int) -> Optional[datetime]:
    """
    Compare-and-set on users.ban_until so a concurrent ban update is never lost.
    Returns the new ban end, or None if it could not be written.
    """
    try:
        for _ in range(BAN_UPDATE_ATTEMPTS):
            row = db.query(User.ban_until).filter(User.user_id == user_id).first()
            if row is None:
                logger.error("Ban not applied: user %s no longer exists", user_id)
                return None

            current = row.ban_until
            new_until = extend_ban(current, late, now, multiplier)

            q = db.query(User).filter(User.user_id == user_id)
            if current is None:
                q = q.filter(User.ban_until.is_(None))
            else:
                q = q.filter(User.ban_until == current)

            if q.update({User.ban_until: to_db(new_until)}, synchronize_session=False) == 1:
                db.commit()
                return new_until
            db.rollback()

        logger.error(
            "Recoverable inconsistency: ban for user %s (late=%s) lost %d compare-and-set attempts",
            user_id, late, BAN_UPDATE_ATTEMPTS,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Recoverable inconsistency: loan returned but ban for user %s (late=%s) not applied",
            user_id, late,
        )
    return None


def _restore_availability(db: Session, book_id: int, loan_id: int) -> None:
    try:
        updated = (
            db.query(Book)
            .filter(Book.book_id == book_id)
            .update({Book.available: True}, synchronize_session=False)
        )
        db.commit()
        if updated == 0:
            logger.warning("Loan %s returned but book %s no longer exists", loan_id, book_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Recoverable inconsistency: loan %s returned but book %s still unavailable",
            loan_id, book_id,
        )


def return_loan(
        db: Session,
        loan_id: int,
        now: datetime,
        policy: Optional[PenaltyPolicy] = None,
) -> ReturnResult:
    try:
        if policy is None:
            policy = load_policy(db)

        loan = db.query(Loan).filter(Loan.loan_id == loan_id).first()
        if not loan:
            raise LoanNotFound(loan_id)
        if loan.is_returned:
            raise AlreadyReturned(loan_id)

        user = db.query(User).filter(User.user_id == loan.user_id).first()
        if user is not None and user.is_admin:
            logger.critical(
                "Invariant violation: admin user %s holds active loan %s", user.user_id, loan_id
            )
            raise InvariantViolation("admin account holds an active loan", loan_id=loan_id, user_id=user.user_id)

        late = days_late(loan.due_date, now)
        fee = late_fee(late, policy.fee_per_day)

        updated = (
            db.query(Loan)
            .filter(Loan.loan_id == loan_id, Loan.is_returned.is_(False))
            .update(
                {
                    Loan.is_returned: True,
                    Loan.return_date: to_db(now),
                    Loan.days_late: late,
                    Loan.fee_amount: fee,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise AlreadyReturned(loan_id)
        db.commit()

    except LoanRejection as rejection:
        db.rollback()
        logger.info("Return rejected loan=%s code=%s", loan_id, rejection.code)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Return failed loan=%s", loan_id)
        raise TransientInfrastructureFailure("return", e) from e

    user_id, book_id = loan.user_id, loan.book_id

    ban_until = None
    if late > 0:
        ban_until = _apply_ban(db, user_id, late, now, policy.ban_multiplier)

    _restore_availability(db, book_id, loan_id)

    db.refresh(loan)
    logger.info("Loan %s returned user=%s late=%s fee=%s", loan_id, user_id, late, fee)

    return ReturnResult(
        loan=loan,
        days_late=late,
        fee_amount=fee,
        currency=policy.currency,
        ban_until=ban_until,
        settlement_required=fee > 0,
        message=fee_summary(late, fee, policy.currency, ban_until),
    )


# -------------------------------------------------
# Settlement (called by the payment collaborator only)
# -------------------------------------------------
def mark_fee_settled(
        db: Session,
        loan_id: int,
        reference: str,
        settled_at: datetime,
        notifier: Optional[NotificationGateway] = None,
) -> Loan:
    try:
        loan = db.query(Loan).filter(Loan.loan_id == loan_id).first()
        if not loan:
            raise LoanNotFound(loan_id)
        if money(loan.fee_amount) <= 0:
            raise NoFeeOwed(loan_id)
        if loan.fee_paid:
            if loan.fee_payment_reference != reference:
                logger.warning(
                    "Loan %s already settled with %s, ignoring %s",
                    loan_id, loan.fee_payment_reference, reference,
                )
            return loan
        if not loan.is_returned:
            raise FeeNotSettleable(loan_id)

        updated = (
            db.query(Loan)
            .filter(Loan.loan_id == loan_id, Loan.fee_paid.is_(False))
            .update(
                {
                    Loan.fee_paid: True,
                    Loan.fee_payment_reference: reference,
                    Loan.fee_paid_at: to_db(settled_at),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(loan)

    except LoanRejection as rejection:
        db.rollback()
        logger.info("Settlement rejected loan=%s code=%s", loan_id, rejection.code)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Settlement failed loan=%s", loan_id)
        raise TransientInfrastructureFailure("settlement", e) from e

    if updated != 1:
        # settled concurrently by another delivery of the same payment
        return loan

    logger.info("Loan %s fee %s settled ref=%s", loan_id, loan.fee_amount, reference)

    if notifier is not None:
        _send_receipt(notifier, loan)
    return loan


def _send_receipt(notifier: NotificationGateway, loan: Loan) -> None:
    email = loan.user.email if loan.user else None
    if not email:
        return
    title = loan.book.title if loan.book else "Unknown"
    summary = f"Book: {title}\nDays late: {loan.days_late}"
    try:
        notifier.send_penalty_receipt(email, summary, money(loan.fee_amount))
    except Exception:
        logger.exception("Penalty receipt for loan %s to %s failed", loan.loan_id, email)


# -------------------------------------------------
# Queries
# -------------------------------------------------
def list_user_loans(db: Session, user_id: int) -> List[Loan]:
    return (
        db.query(Loan)
        .filter(Loan.user_id == user_id)
        .order_by(Loan.loan_id.desc())
        .all()
    )


def list_loans(db: Session, is_returned: Optional[bool] = None, limit: int = 50, offset: int = 0) -> List[Loan]:
    q = db.query(Loan)
    if is_returned is not None:
        q = q.filter(Loan.is_returned.is_(is_returned))
    return q.order_by(Loan.loan_id.desc()).offset(offset).limit(limit).all()


def late_fee_history(db: Session, user_id: int) -> dict:
    loans = (
        db.query(Loan)
        .filter(Loan.user_id == user_id, Loan.days_late > 0)
        .order_by(Loan.loan_id.desc())
        .all()
    )
    owed = money(sum((money(l.fee_amount) for l in loans if not l.fee_paid), Decimal("0")))
    paid = money(sum((money(l.fee_amount) for l in loans if l.fee_paid), Decimal("0")))
    return {"loans": loans, "total_owed": owed, "total_paid": paid}


def overdue_loans(db: Session, now: datetime) -> List[Loan]:
    return (
        db.query(Loan)
        .filter(Loan.is_returned.is_(False), Loan.due_date < to_db(now))
        .order_by(Loan.due_date.asc())
        .all()
    )


def late_fee_stats(db: Session, now: datetime) -> dict:
    active = db.query(func.count(Loan.loan_id)).filter(Loan.is_returned.is_(False)).scalar()
    overdue = (
        db.query(func.count(Loan.loan_id))
        .filter(Loan.is_returned.is_(False), Loan.due_date < to_db(now))
        .scalar()
    )
    returned_late = (
        db.query(func.count(Loan.loan_id))
        .filter(Loan.is_returned.is_(True), Loan.days_late > 0)
        .scalar()
    )
    assessed = db.query(func.coalesce(func.sum(Loan.fee_amount), 0)).scalar()
    collected = (
        db.query(func.coalesce(func.sum(Loan.fee_amount), 0))
        .filter(Loan.fee_paid.is_(True))
        .scalar()
    )
    assessed, collected = money(assessed), money(collected)
    return {
        "active_loans": int(active or 0),
        "overdue_loans": int(overdue or 0),
        "returned_late": int(returned_late or 0),
        "total_assessed": assessed,
        "total_collected": collected,
        "total_outstanding": money(assessed - collected),
    }
