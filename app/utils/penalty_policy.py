"""
Late-return penalty and ban rules.

Pure functions only: no session, no clock. Callers pass `as_of` explicitly,
which is what lets the return path and the nightly overdue job share them.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.core.clock import as_utc

MS_PER_DAY = 24 * 60 * 60 * 1000


def money(x) -> Decimal:
    """Always return 2-decimal Decimal with HALF_UP rounding."""
    if x is None:
        x = 0
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PenaltyPolicy:
    fee_per_day: Decimal = Decimal("5.00")
    ban_multiplier: int = 2
    max_active_loans: int = 1
    currency: str = "TL"


def days_late(due: datetime, as_of: datetime) -> int:
    """
    max(0, ceil((as_of - due) / 1 day))

    Example:
      due=2024-06-01 00:00, as_of=2024-06-04 00:00 => 3
      due=2024-06-01 00:00, as_of=2024-06-01 00:00:01 => 1
    """
    delta = as_utc(as_of) - as_utc(due)
    if delta <= timedelta(0):
        return 0
    elapsed_ms = delta // timedelta(milliseconds=1)
    return max(0, math.ceil(elapsed_ms / MS_PER_DAY))


def late_fee(late_days: int, fee_per_day) -> Decimal:
    if late_days <= 0:
        return money(0)
    return money(Decimal(late_days) * money(fee_per_day))


def extend_ban(
        current_ban_until: Optional[datetime],
        late_days: int,
        as_of: datetime,
        multiplier: int,
) -> Optional[datetime]:
    """
    Additive stacking:
      new = max(current_ban_until, as_of) + late_days * multiplier days

    An expired (or missing) ban restarts from `as_of`; an active one is never
    shortened. No infraction => ban left as it was.
    """
    if late_days <= 0:
        return current_ban_until

    anchor = as_utc(as_of)
    if current_ban_until is not None and as_utc(current_ban_until) > anchor:
        anchor = as_utc(current_ban_until)

    return anchor + timedelta(days=late_days * int(multiplier))


def is_banned(ban_until: Optional[datetime], is_permanent: bool, now: datetime) -> bool:
    if is_permanent:
        return True
    return ban_until is not None and as_utc(ban_until) > as_utc(now)


def ban_days_remaining(ban_until: Optional[datetime], now: datetime) -> int:
    if ban_until is None:
        return 0
    return days_late(now, ban_until)
