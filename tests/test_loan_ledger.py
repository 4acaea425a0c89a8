from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app.core.clock import as_utc
from app.models.book_model import Book
from app.models.loan_model import (
    Loan,
    STATE_CLOSED_FEE_PENDING,
    STATE_CLOSED_FEE_SETTLED,
    STATE_CLOSED_ON_TIME,
)
from app.models.user_model import User
from app.services import loan_ledger
from app.services.admission import try_borrow
from app.services.errors import (
    AlreadyReturned,
    FeeNotSettleable,
    InvariantViolation,
    LoanNotFound,
    NoFeeOwed,
    UnpaidFeeOutstanding,
)
from app.services.loan_ledger import late_fee_history, late_fee_stats, mark_fee_settled, return_loan


def _reload_user(db, user_id):
    db.expire_all()
    return db.query(User).filter(User.user_id == user_id).one()


def _reload_book(db, book_id):
    db.expire_all()
    return db.query(Book).filter(Book.book_id == book_id).one()


def test_late_return_charges_fee_and_bans(db, clock, policy, make_user, make_book, make_loan):
    user = make_user()
    book = make_book()
    loan = make_loan(user, book, due_date=clock.now())

    clock.advance(days=3)
    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.days_late == 3
    assert result.fee_amount == Decimal("15.00")
    assert result.settlement_required is True
    assert result.ban_until == clock.now() + timedelta(days=6)
    assert "3 day(s) late" in result.message
    assert "15.00 TL" in result.message

    assert result.loan.is_returned is True
    assert as_utc(result.loan.return_date) == clock.now()
    assert result.loan.state == STATE_CLOSED_FEE_PENDING

    assert as_utc(_reload_user(db, user.user_id).ban_until) == clock.now() + timedelta(days=6)
    assert _reload_book(db, book.book_id).available is True


def test_on_time_return(db, clock, policy, make_user, make_book, make_loan):
    user = make_user()
    book = make_book()
    loan = make_loan(user, book, due_date=clock.now() + timedelta(days=1))

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.days_late == 0
    assert result.fee_amount == Decimal("0.00")
    assert result.settlement_required is False
    assert result.ban_until is None
    assert result.message == "Book successfully returned."
    assert result.loan.state == STATE_CLOSED_ON_TIME
    assert _reload_user(db, user.user_id).ban_until is None
    assert _reload_book(db, book.book_id).available is True


def test_one_second_late_is_a_full_day(db, clock, policy, make_user, make_book, make_loan):
    user = make_user()
    loan = make_loan(user, make_book(), due_date=clock.now())

    clock.advance(seconds=1)
    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.days_late == 1
    assert result.fee_amount == Decimal("5.00")


def test_bans_stack_on_an_active_ban(db, clock, policy, make_user, make_book, make_loan):
    # existing ban still running: the new days are appended to it
    existing = clock.now() + timedelta(days=10)
    user = make_user(ban_until=existing)
    loan = make_loan(user, make_book(), due_date=clock.now() - timedelta(days=2))

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.days_late == 2
    assert result.ban_until == existing + timedelta(days=4)


def test_expired_ban_restarts_from_return_time(db, clock, policy, make_user, make_book, make_loan):
    user = make_user(ban_until=clock.now() - timedelta(days=30))
    loan = make_loan(user, make_book(), due_date=clock.now() - timedelta(days=1))

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.ban_until == clock.now() + timedelta(days=2)


def test_return_twice_and_unknown_loan(db, clock, policy, make_user, make_book, make_loan):
    loan = make_loan(make_user(), make_book(), due_date=clock.now() + timedelta(days=1))
    return_loan(db, loan.loan_id, clock.now(), policy)

    with pytest.raises(AlreadyReturned):
        return_loan(db, loan.loan_id, clock.now(), policy)
    with pytest.raises(LoanNotFound):
        return_loan(db, 12345, clock.now(), policy)


def test_admin_holding_a_loan_is_an_invariant_violation(db, clock, policy, make_user, make_book, make_loan):
    admin = make_user(role="admin")
    loan = make_loan(admin, make_book(), due_date=clock.now() - timedelta(days=1))

    with pytest.raises(InvariantViolation):
        return_loan(db, loan.loan_id, clock.now(), policy)

    db.expire_all()
    assert db.query(Loan).filter(Loan.loan_id == loan.loan_id).one().is_returned is False


def test_return_succeeds_when_book_row_is_gone(db, clock, policy, make_user, make_book, make_loan, caplog):
    book = make_book()
    loan = make_loan(make_user(), book, due_date=clock.now() + timedelta(days=1))
    db.query(Book).filter(Book.book_id == book.book_id).delete(synchronize_session=False)
    db.commit()

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.loan.is_returned is True
    assert "no longer exists" in caplog.text


def test_ban_write_failure_keeps_the_return(db, clock, policy, make_user, make_book, make_loan, monkeypatch, caplog):
    user = make_user()
    book = make_book()
    loan = make_loan(user, book, due_date=clock.now() - timedelta(days=2))

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE users", {}, Exception("database is locked"))

    monkeypatch.setattr(loan_ledger, "extend_ban", broken)

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.loan.is_returned is True
    assert result.fee_amount == Decimal("10.00")
    assert result.ban_until is None
    assert "Recoverable inconsistency" in caplog.text
    assert _reload_user(db, user.user_id).ban_until is None
    assert _reload_book(db, book.book_id).available is True


def _returned_late(make_user, make_book, make_loan, clock, **user_kwargs):
    user = make_user(**user_kwargs)
    return make_loan(
        user,
        make_book(),
        due_date=clock.now() - timedelta(days=5),
        is_returned=True,
        return_date=clock.now() - timedelta(days=2),
        days_late=3,
        fee_amount=Decimal("15.00"),
    )


def test_settlement_marks_fee_paid(db, clock, make_user, make_book, make_loan, notifier):
    loan = _returned_late(make_user, make_book, make_loan, clock)

    settled = mark_fee_settled(db, loan.loan_id, "pay_001", clock.now(), notifier)

    assert settled.fee_paid is True
    assert settled.fee_payment_reference == "pay_001"
    assert as_utc(settled.fee_paid_at) == clock.now()
    # history is preserved
    assert settled.days_late == 3
    assert settled.fee_amount == Decimal("15.00")
    assert settled.state == STATE_CLOSED_FEE_SETTLED
    assert len(notifier.receipts) == 1
    assert notifier.receipts[0][2] == Decimal("15.00")


def test_settlement_is_idempotent(db, clock, make_user, make_book, make_loan, notifier, caplog):
    loan = _returned_late(make_user, make_book, make_loan, clock)

    mark_fee_settled(db, loan.loan_id, "pay_001", clock.now(), notifier)
    clock.advance(hours=1)
    again = mark_fee_settled(db, loan.loan_id, "pay_002", clock.now(), notifier)

    assert again.fee_payment_reference == "pay_001"
    assert as_utc(again.fee_paid_at) == clock.now() - timedelta(hours=1)
    assert len(notifier.receipts) == 1
    assert "already settled" in caplog.text


def test_settlement_rejections(db, clock, make_user, make_book, make_loan):
    on_time = make_loan(
        make_user(),
        make_book(),
        due_date=clock.now(),
        is_returned=True,
        return_date=clock.now() - timedelta(hours=1),
    )
    still_out = make_loan(
        make_user(),
        make_book(),
        due_date=clock.now() - timedelta(days=2),
        days_late=2,
        fee_amount=Decimal("10.00"),
    )

    with pytest.raises(NoFeeOwed):
        mark_fee_settled(db, on_time.loan_id, "pay_x", clock.now())
    with pytest.raises(FeeNotSettleable):
        mark_fee_settled(db, still_out.loan_id, "pay_y", clock.now())
    with pytest.raises(LoanNotFound):
        mark_fee_settled(db, 999, "pay_z", clock.now())


def test_settlement_unblocks_borrowing(db, clock, policy, make_user, make_book, make_loan):
    loan = _returned_late(make_user, make_book, make_loan, clock)
    book = make_book()

    with pytest.raises(UnpaidFeeOutstanding):
        try_borrow(db, loan.user_id, book.book_id, clock.now() + timedelta(days=7), clock.now(), policy)

    mark_fee_settled(db, loan.loan_id, "pay_001", clock.now())

    new_loan = try_borrow(db, loan.user_id, book.book_id, clock.now() + timedelta(days=7), clock.now(), policy)
    assert new_loan.loan_id != loan.loan_id


def test_receipt_failure_does_not_undo_settlement(db, clock, make_user, make_book, make_loan, notifier):
    loan = _returned_late(make_user, make_book, make_loan, clock, email="broken@example.com")
    notifier.fail_for.add("broken@example.com")

    settled = mark_fee_settled(db, loan.loan_id, "pay_001", clock.now(), notifier)

    assert settled.fee_paid is True
    assert notifier.receipts == []


def test_late_fee_history_and_stats(db, clock, make_user, make_book, make_loan):
    user = make_user()
    paid = make_loan(
        user,
        make_book(),
        due_date=clock.now() - timedelta(days=20),
        is_returned=True,
        return_date=clock.now() - timedelta(days=18),
        days_late=2,
        fee_amount=Decimal("10.00"),
        fee_paid=True,
        fee_payment_reference="pay_old",
    )
    owed = _returned_late(make_user, make_book, make_loan, clock)
    # owed belongs to another user; give this one an unpaid loan too
    make_loan(
        user,
        make_book(),
        due_date=clock.now() - timedelta(days=4),
        is_returned=True,
        return_date=clock.now() - timedelta(days=3),
        days_late=1,
        fee_amount=Decimal("5.00"),
    )
    make_loan(user, make_book(), due_date=clock.now() - timedelta(days=1))  # overdue, still out
    make_loan(make_user(), make_book(), due_date=clock.now() + timedelta(days=3))

    history = late_fee_history(db, user.user_id)
    assert len(history["loans"]) == 2
    assert history["total_owed"] == Decimal("5.00")
    assert history["total_paid"] == Decimal("10.00")
    assert paid.loan_id in {l.loan_id for l in history["loans"]}

    stats = late_fee_stats(db, clock.now())
    assert stats["active_loans"] == 2
    assert stats["overdue_loans"] == 1
    assert stats["returned_late"] == 3
    assert stats["total_assessed"] == Decimal("30.00")
    assert stats["total_collected"] == Decimal("10.00")
    assert stats["total_outstanding"] == Decimal("20.00")
    assert owed.loan_id not in {l.loan_id for l in history["loans"]}


def test_ban_stacking_calendar_example(db, clock, policy, make_user, make_book, make_loan):
    clock.set(datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))
    banned_until = datetime(2024, 7, 1, tzinfo=timezone.utc)
    user = make_user(ban_until=banned_until)
    loan = make_loan(user, make_book(), due_date=clock.now() - timedelta(days=2))

    result = return_loan(db, loan.loan_id, clock.now(), policy)

    assert result.ban_until == datetime(2024, 7, 5, tzinfo=timezone.utc)
