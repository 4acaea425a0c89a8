# app/core/clock.py
"""
Time sources.

Everything that needs "now" takes a clock (or an explicit `now`) so that
request handling and the nightly jobs can be driven deterministically in tests.
All datetimes handed out here are timezone-aware UTC; the database stores
naive UTC, see `as_utc` / `to_db`.
"""
from datetime import datetime, timedelta, timezone
from threading import Lock


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive values are taken to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt: datetime) -> datetime:
    """Naive UTC, the storage format of every DateTime column."""
    return as_utc(dt).replace(tzinfo=None)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self._now = as_utc(start)
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = as_utc(value)

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
