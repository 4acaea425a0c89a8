# app/services/notifications.py
"""
Outbound mail for the loan core.

The ledger and the reminder job only talk to `NotificationGateway`; whichever
implementation is wired in, a raised exception means "not sent" and it is the
caller's job to log it and carry on.
"""
import logging
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from email.message import EmailMessage
from zoneinfo import ZoneInfo

from app.core import config
from app.core.clock import as_utc

logger = logging.getLogger(__name__)


class NotificationGateway(ABC):
    @abstractmethod
    def send_reminder(self, user_email: str, book_title: str, due_date: datetime) -> None:
        """Tell a borrower the book is due tomorrow."""

    @abstractmethod
    def send_penalty_receipt(self, user_email: str, loan_summary: str, amount: Decimal) -> None:
        """Confirm a settled late fee."""


def _local_date(dt: datetime, tz_name: str) -> str:
    return as_utc(dt).astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d")


def reminder_text(book_title: str, due_date: datetime, tz_name: str) -> str:
    return (
        "Hello,\n\n"
        f'Your borrowed book "{book_title}" is due TOMORROW!\n\n'
        f"Due Date: {_local_date(due_date, tz_name)}\n\n"
        "Please remember to return the book on time. Late returns incur a daily fee "
        "and a temporary borrowing ban.\n\n"
        "Library Team"
    )


def receipt_text(loan_summary: str, amount: Decimal, currency: str) -> str:
    return (
        "Hello,\n\n"
        "Your late return fee has been successfully paid.\n\n"
        f"{loan_summary}\n"
        f"Amount Paid: {amount} {currency}\n\n"
        "Remember to return your books on time.\n\n"
        "Library Team"
    )


class SmtpNotificationGateway(NotificationGateway):
    def __init__(
            self,
            host: str,
            port: int,
            username: str = "",
            password: str = "",
            sender: str = "",
            tz_name: str = config.APP_TIMEZONE,
            currency: str = config.CURRENCY,
            timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.tz_name = tz_name
        self.currency = currency
        self.timeout = timeout

    def _send(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.username:
                smtp.starttls()
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    def send_reminder(self, user_email, book_title, due_date):
        self._send(
            user_email,
            "Book Return Reminder - Due Tomorrow!",
            reminder_text(book_title, due_date, self.tz_name),
        )

    def send_penalty_receipt(self, user_email, loan_summary, amount):
        self._send(
            user_email,
            "Payment Confirmation - Late Return Fee",
            receipt_text(loan_summary, amount, self.currency),
        )


class LoggingNotificationGateway(NotificationGateway):
    """Used when no SMTP host is configured: the mail is only logged."""

    def __init__(self, tz_name: str = config.APP_TIMEZONE, currency: str = config.CURRENCY):
        self.tz_name = tz_name
        self.currency = currency

    def send_reminder(self, user_email, book_title, due_date):
        logger.info(
            "[MAIL] reminder to=%s\n%s", user_email, reminder_text(book_title, due_date, self.tz_name)
        )

    def send_penalty_receipt(self, user_email, loan_summary, amount):
        logger.info(
            "[MAIL] penalty receipt to=%s\n%s", user_email, receipt_text(loan_summary, amount, self.currency)
        )


def build_notifier() -> NotificationGateway:
    if config.SMTP_HOST:
        return SmtpNotificationGateway(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USER,
            password=config.SMTP_PASS,
            sender=config.MAIL_FROM,
        )
    logger.warning("SMTP_HOST not set; outgoing mail will only be logged")
    return LoggingNotificationGateway()
