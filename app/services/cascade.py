# app/services/cascade.py
"""
Administrative deletes that must take dependent loans with them.

Each delete is an explicit, ordered list of cleanup steps executed in a
single transaction: either every step is applied or none is.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.book_model import Book
from app.models.loan_model import Loan
from app.models.user_model import User
from app.services.errors import BookNotFound, TransientInfrastructureFailure, UserNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupStep:
    name: str
    apply: Callable[[Session, int], int]


def _release_books_held_by_user(db: Session, user_id: int) -> int:
    held = [
        r.book_id
        for r in db.query(Loan.book_id)
        .filter(Loan.user_id == user_id, Loan.is_returned.is_(False))
        .all()
    ]
    if not held:
        return 0
    return (
        db.query(Book)
        .filter(Book.book_id.in_(held))
        .update({Book.available: True}, synchronize_session=False)
    )


def _delete_user_loans(db: Session, user_id: int) -> int:
    return db.query(Loan).filter(Loan.user_id == user_id).delete(synchronize_session=False)


def _delete_user_row(db: Session, user_id: int) -> int:
    return db.query(User).filter(User.user_id == user_id).delete(synchronize_session=False)


def _delete_book_loans(db: Session, book_id: int) -> int:
    return db.query(Loan).filter(Loan.book_id == book_id).delete(synchronize_session=False)


def _delete_book_row(db: Session, book_id: int) -> int:
    return db.query(Book).filter(Book.book_id == book_id).delete(synchronize_session=False)


USER_CLEANUP_STEPS: List[CleanupStep] = [
    CleanupStep("release_held_books", _release_books_held_by_user),
    CleanupStep("delete_loans", _delete_user_loans),
    CleanupStep("delete_user", _delete_user_row),
]

BOOK_CLEANUP_STEPS: List[CleanupStep] = [
    CleanupStep("delete_loans", _delete_book_loans),
    CleanupStep("delete_book", _delete_book_row),
]


def run_cleanup(db: Session, steps: List[CleanupStep], entity_id: int, label: str) -> Dict[str, int]:
    applied = {}
    try:
        for step in steps:
            applied[step.name] = step.apply(db, entity_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Cascade delete of %s %s rolled back at step %s", label, entity_id, step.name)
        raise TransientInfrastructureFailure(f"delete {label}", e) from e

    logger.info("Deleted %s %s: %s", label, entity_id, applied)
    return applied


def delete_user(db: Session, user_id: int) -> Dict[str, int]:
    if not db.query(User).filter(User.user_id == user_id).first():
        raise UserNotFound(user_id)
    return run_cleanup(db, USER_CLEANUP_STEPS, user_id, "user")


def delete_book(db: Session, book_id: int) -> Dict[str, int]:
    if not db.query(Book).filter(Book.book_id == book_id).first():
        raise BookNotFound(book_id)
    return run_cleanup(db, BOOK_CLEANUP_STEPS, book_id, "book")
