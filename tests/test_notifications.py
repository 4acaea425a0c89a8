from datetime import datetime, timezone
from decimal import Decimal

from app.core import config
from app.services import notifications
from app.services.notifications import (
    LoggingNotificationGateway,
    SmtpNotificationGateway,
    build_notifier,
    reminder_text,
)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.sent.append(msg)


def test_reminder_uses_local_calendar_date():
    # 22:30 UTC on the 1st is already the 2nd in Istanbul
    due = datetime(2024, 6, 1, 22, 30, tzinfo=timezone.utc)
    assert "Due Date: 2024-06-02" in reminder_text("Dune", due, "Europe/Istanbul")
    assert "Due Date: 2024-06-01" in reminder_text("Dune", due, "UTC")


def test_smtp_gateway_sends_reminder_and_receipt(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    gateway = SmtpNotificationGateway(
        "smtp.example.com", 587, username="lib", password="pw", sender="library@example.com", tz_name="UTC"
    )

    gateway.send_reminder("ayse@example.com", "Dune", datetime(2024, 6, 2, 10, tzinfo=timezone.utc))
    gateway.send_penalty_receipt("ayse@example.com", "Book: Dune\nDays late: 3", Decimal("15.00"))

    reminder, receipt = [s.sent[0] for s in FakeSMTP.instances]
    assert reminder["To"] == "ayse@example.com"
    assert reminder["From"] == "library@example.com"
    assert "Due Tomorrow" in reminder["Subject"]
    assert '"Dune"' in reminder.get_content()
    assert "Amount Paid: 15.00 TL" in receipt.get_content()
    assert FakeSMTP.instances[0].tls is True
    assert FakeSMTP.instances[0].logged_in == ("lib", "pw")


def test_without_smtp_host_mail_is_only_logged(monkeypatch, caplog):
    monkeypatch.setattr(config, "SMTP_HOST", "")
    caplog.set_level("INFO")

    gateway = build_notifier()
    assert isinstance(gateway, LoggingNotificationGateway)

    gateway.send_reminder("ayse@example.com", "Dune", datetime(2024, 6, 2, 10, tzinfo=timezone.utc))
    assert "[MAIL] reminder to=ayse@example.com" in caplog.text
