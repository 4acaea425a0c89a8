import os
import tempfile

# must be set before anything under app/ is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["APP_TIMEZONE"] = "UTC"
os.environ["SMTP_HOST"] = ""
os.environ["SETTLEMENT_TOKEN"] = "settle-secret"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="loan-tests-logs-")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

import app.models  # noqa: F401
from app.core.clock import FixedClock, to_db
from app.models.book_model import Book
from app.models.loan_model import Loan
from app.models.user_model import User
from app.services.notifications import NotificationGateway
from app.utils.database import Base, SessionLocal, engine
from app.utils.penalty_policy import PenaltyPolicy

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier(NotificationGateway):
    def __init__(self):
        self.reminders = []
        self.receipts = []
        self.fail_for = set()

    def send_reminder(self, user_email, book_title, due_date):
        if user_email in self.fail_for:
            raise ConnectionError(f"SMTP refused {user_email}")
        self.reminders.append((user_email, book_title, due_date))

    def send_penalty_receipt(self, user_email, loan_summary, amount):
        if user_email in self.fail_for:
            raise ConnectionError(f"SMTP refused {user_email}")
        self.receipts.append((user_email, loan_summary, amount))


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def policy():
    return PenaltyPolicy(
        fee_per_day=Decimal("5.00"),
        ban_multiplier=2,
        max_active_loans=1,
        currency="TL",
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="user", email="default", ban_until=None, is_permanent_ban=False, username=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            username=username or f"member{n}",
            email=f"member{n}@example.com" if email == "default" else email,
            role=role,
            ban_until=to_db(ban_until) if ban_until else None,
            is_permanent_ban=is_permanent_ban,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(title=None, available=True):
        counter["n"] += 1
        book = Book(title=title or f"Book {counter['n']}", author="Some Author", available=available)
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make


@pytest.fixture
def make_loan(db):
    """Insert a loan directly, bypassing admission (for ledger/job tests)."""

    def _make(user, book, due_date, loan_date=None, **fields):
        if fields.get("return_date") is not None:
            fields["return_date"] = to_db(fields["return_date"])
        loan = Loan(
            user_id=user.user_id,
            book_id=book.book_id,
            loan_date=to_db(loan_date or (due_date - timedelta(days=14))),
            due_date=to_db(due_date),
            is_returned=fields.pop("is_returned", False),
            days_late=fields.pop("days_late", 0),
            fee_amount=fields.pop("fee_amount", Decimal("0.00")),
            fee_paid=fields.pop("fee_paid", False),
            reminder_sent=fields.pop("reminder_sent", False),
            **fields,
        )
        if not loan.is_returned and book.available:
            book.available = False
        db.add(loan)
        db.commit()
        db.refresh(loan)
        return loan

    return _make


@pytest.fixture
def client(clock, notifier):
    from fastapi.testclient import TestClient

    from main import app
    from app.services.popular_books import PopularBooksCache
    from app.services.scheduler import build_scheduler

    app.state.clock = clock
    app.state.notifier = notifier
    app.state.popular_cache = PopularBooksCache(300, clock)
    app.state.scheduler = build_scheduler(SessionLocal, clock, notifier)

    with TestClient(app) as c:
        yield c
