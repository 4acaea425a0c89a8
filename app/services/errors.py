# app/services/errors.py
"""
Failure taxonomy of the loan core.

- LoanRejection: an expected business-rule outcome. Reported to the caller
  with a machine-readable `code` and structured `detail`; never retried.
- InvariantViolation: stored data contradicts the model (e.g. an admin holding
  a loan). Logged CRITICAL and aborted.
- TransientInfrastructureFailure: persistence/notification trouble; safe to retry.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


class LoanRejection(Exception):
    code = "rejected"
    http_status = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class RoleForbidden(LoanRejection):
    code = "role_forbidden"
    http_status = 403

    def __init__(self, role: str):
        super().__init__("Admins are not allowed to borrow books.", {"role": role})


class Banned(LoanRejection):
    code = "banned"
    http_status = 403

    def __init__(self, until: Optional[datetime], permanent: bool, days_remaining: int):
        if permanent:
            message = "Your borrowing privileges have been permanently suspended."
        else:
            message = f"You cannot borrow books until {until:%Y-%m-%d}."
        super().__init__(
            message,
            {
                "until": until.isoformat() if until else None,
                "permanent": permanent,
                "days_remaining": days_remaining,
            },
        )
        self.until = until


class ActiveLoanLimitReached(LoanRejection):
    code = "active_loan_limit_reached"
    http_status = 409

    def __init__(self, limit: int, active: int):
        super().__init__(
            f"You can have at most {limit} active loan(s) at a time.",
            {"limit": limit, "active": active},
        )
        self.limit = limit


class UnpaidFeeOutstanding(LoanRejection):
    code = "unpaid_fee_outstanding"
    http_status = 402

    def __init__(self, total: Decimal, currency: str, loan_ids):
        super().__init__(
            f"You have unpaid late fees of {total} {currency}. Please settle them before borrowing.",
            {"total": str(total), "currency": currency, "loan_ids": list(loan_ids)},
        )
        self.total = total


class ItemUnavailable(LoanRejection):
    code = "item_unavailable"
    http_status = 409

    def __init__(self, book_id: int):
        super().__init__("Book is not available.", {"book_id": book_id})


class InvalidDueDate(LoanRejection):
    code = "invalid_due_date"
    http_status = 400

    def __init__(self, reason: str):
        super().__init__("Due date must be a valid future date.", {"reason": reason})


class UserNotFound(LoanRejection):
    code = "user_not_found"
    http_status = 404

    def __init__(self, user_id: int):
        super().__init__("User not found.", {"user_id": user_id})


class LoanNotFound(LoanRejection):
    code = "not_found"
    http_status = 404

    def __init__(self, loan_id: int):
        super().__init__("Loan not found.", {"loan_id": loan_id})


class AlreadyReturned(LoanRejection):
    code = "already_returned"
    http_status = 409

    def __init__(self, loan_id: int):
        super().__init__("Loan already returned.", {"loan_id": loan_id})


class NoFeeOwed(LoanRejection):
    code = "no_fee_owed"
    http_status = 400

    def __init__(self, loan_id: int):
        super().__init__("This loan has no late fee to settle.", {"loan_id": loan_id})


class FeeNotSettleable(LoanRejection):
    code = "fee_not_settleable"
    http_status = 409

    def __init__(self, loan_id: int):
        super().__init__(
            "The late fee can only be settled after the book is returned.",
            {"loan_id": loan_id},
        )


class InvariantViolation(Exception):
    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class TransientInfrastructureFailure(Exception):
    """Retryable; the caller only ever sees a generic message."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed")
        self.operation = operation
        self.cause = cause


class BookNotFound(LoanRejection):
    code = "book_not_found"
    http_status = 404

    def __init__(self, book_id: int):
        super().__init__("Book not found.", {"book_id": book_id})
