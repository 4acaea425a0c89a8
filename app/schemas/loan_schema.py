from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from typing import Optional, List, Literal


class BorrowRequest(BaseModel):
    book_id: int
    # validated by the admission rules, so junk gets a proper rejection code
    due_date: Optional[str] = None

    @field_validator("due_date", mode="before")
    def stringify(cls, v):
        if v is None:
            return None
        if isinstance(v, (datetime, date)):
            return v.isoformat()
        return str(v)


class LoanOut(BaseModel):
    loan_id: int
    user_id: int
    book_id: int

    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    is_returned: bool

    days_late: int
    fee_amount: float
    fee_paid: bool
    fee_payment_reference: Optional[str] = None
    fee_paid_at: Optional[datetime] = None
    fee_status: Literal["none", "pending", "paid"]

    reminder_sent: bool
    state: str

    class Config:
        from_attributes = True


class ReturnOut(BaseModel):
    message: str
    loan: LoanOut
    days_late: int
    fee_amount: float
    currency: str
    ban_until: Optional[datetime] = None
    settlement_required: bool


class LateFeeHistoryOut(BaseModel):
    loans: List[LoanOut]
    total_owed: float
    total_paid: float


class LateFeeStatsOut(BaseModel):
    active_loans: int = 0
    overdue_loans: int = 0
    returned_late: int = 0
    total_assessed: float = 0
    total_collected: float = 0
    total_outstanding: float = 0


class SettlementCreate(BaseModel):
    reference: str = Field(..., min_length=1, max_length=255)
    settled_at: Optional[datetime] = None

    @field_validator("reference", mode="before")
    def strip_reference(cls, v):
        return str(v).strip() if v is not None else v


class OverdueRowOut(BaseModel):
    loan_id: int
    user_id: int
    book_id: int
    due_date: datetime
    days_late: int
    fee_amount: float

    class Config:
        from_attributes = True


class PopularBookOut(BaseModel):
    book_id: int
    title: str
    author: Optional[str] = None
    available: bool
    loan_count: int


class JobRunOut(BaseModel):
    job_name: str
    is_running: bool
    last_run_date: Optional[date] = None
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    processed: int
    failed: int
    skipped: int
    last_error: Optional[str] = None

    class Config:
        from_attributes = True


class JobResultOut(BaseModel):
    job: str
    ran: bool
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    capped: bool = False
    reason: Optional[str] = None
