# app/services/popular_books.py
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.clock import to_db
from app.models.book_model import Book
from app.models.loan_model import Loan


class PopularBooksCache:
    """
    Small TTL cache keyed by (days, limit). Owned by whoever creates it
    (the app keeps one on app.state); nothing here is module-global.
    """

    def __init__(self, ttl_seconds: int, clock):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: Dict[Hashable, Tuple[datetime, Any]] = {}
        self._lock = threading.Lock()

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        now = self.clock.now()
        with self._lock:
            hit = self._entries.get(key)
            if hit and now - hit[0] < self.ttl:
                return hit[1]

        value = compute()
        with self._lock:
            self._entries[key] = (now, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()


def popular_books(db: Session, since: datetime, limit: int):
    rows = (
        db.query(
            Book.book_id,
            Book.title,
            Book.author,
            Book.available,
            func.count(Loan.loan_id).label("loan_count"),
        )
        .join(Loan, Loan.book_id == Book.book_id)
        .filter(Loan.loan_date >= to_db(since))
        .group_by(Book.book_id, Book.title, Book.author, Book.available)
        .order_by(func.count(Loan.loan_id).desc(), Book.book_id.asc())
        .limit(limit)
        .all()
    )
    return [
        {
            "book_id": r.book_id,
            "title": r.title,
            "author": r.author,
            "available": bool(r.available),
            "loan_count": int(r.loan_count),
        }
        for r in rows
    ]
