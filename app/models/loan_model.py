# app/models/loan_model.py

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    CheckConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.utils.database import Base

STATE_ACTIVE = "ACTIVE"
STATE_CLOSED_ON_TIME = "CLOSED_ON_TIME"
STATE_CLOSED_FEE_PENDING = "CLOSED_LATE_FEE_PENDING"
STATE_CLOSED_FEE_SETTLED = "CLOSED_LATE_FEE_SETTLED"


class Loan(Base):
    __tablename__ = "loans"

    __table_args__ = (
        Index("ix_loans_user_returned", "user_id", "is_returned"),
        Index("ix_loans_returned_due", "is_returned", "due_date"),
        CheckConstraint("days_late >= 0", name="ck_loans_days_late_non_negative"),
        CheckConstraint("fee_amount >= 0", name="ck_loans_fee_non_negative"),
        CheckConstraint(
            "(is_returned AND return_date IS NOT NULL) OR (NOT is_returned AND return_date IS NULL)",
            name="ck_loans_return_date_matches_flag",
        ),
    )

    loan_id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.book_id", ondelete="RESTRICT"), nullable=False, index=True)

    loan_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)

    return_date = Column(DateTime, nullable=True)
    is_returned = Column(Boolean, nullable=False, default=False, server_default="false")

    # written at return time, or nightly while the loan is still out
    days_late = Column(Integer, nullable=False, default=0, server_default="0")
    fee_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")

    # settlement: only the payment collaborator sets these
    fee_paid = Column(Boolean, nullable=False, default=False, server_default="false")
    fee_payment_reference = Column(String(255), nullable=True)
    fee_paid_at = Column(DateTime, nullable=True)

    reminder_sent = Column(Boolean, nullable=False, default=False, server_default="false")

    created_on = Column(DateTime, server_default=func.now(), nullable=True)
    updated_on = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    user = relationship("User", back_populates="loans")
    book = relationship("Book", back_populates="loans")

    @property
    def state(self) -> str:
        if not self.is_returned:
            return STATE_ACTIVE
        if not self.fee_amount:
            return STATE_CLOSED_ON_TIME
        if self.fee_paid:
            return STATE_CLOSED_FEE_SETTLED
        return STATE_CLOSED_FEE_PENDING

    @property
    def fee_status(self) -> str:
        # none / pending / paid
        if not self.fee_amount:
            return "none"
        return "paid" if self.fee_paid else "pending"
