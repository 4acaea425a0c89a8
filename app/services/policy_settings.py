# app/services/policy_settings.py
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from app.core import config
from app.models.system_settings_model import SystemSetting
from app.utils.penalty_policy import PenaltyPolicy, money

logger = logging.getLogger(__name__)

# key -> (default, description, parser)
POLICY_SETTINGS = {
    "LATE_FEE_PER_DAY": (config.LATE_FEE_PER_DAY, "Late return fee per day", "decimal"),
    "BAN_MULTIPLIER": (config.BAN_MULTIPLIER, "Ban days per late day", "int"),
    "MAX_ACTIVE_LOANS": (config.MAX_ACTIVE_LOANS, "Maximum simultaneous active loans per user", "int"),
    "CURRENCY": (config.CURRENCY, "Currency label used in fee messages", "str"),
}


def get_setting(db: Session, key: str, default: str) -> str:
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    return row.value if row else default


def parse_setting(key: str, value: str):
    """Validate a policy value; raises ValueError for junk."""
    if key not in POLICY_SETTINGS:
        return value
    kind = POLICY_SETTINGS[key][2]
    value = str(value).strip()
    if kind == "int":
        parsed = int(value)
        if parsed < 1:
            raise ValueError(f"{key} must be >= 1")
        return parsed
    if kind == "decimal":
        try:
            parsed = money(Decimal(value))
        except InvalidOperation:
            raise ValueError(f"{key} must be a number")
        if parsed < 0:
            raise ValueError(f"{key} must be >= 0")
        return parsed
    if not value:
        raise ValueError(f"{key} must not be empty")
    return value


def load_policy(db: Session) -> PenaltyPolicy:
    values = {}
    for key, (default, _, _) in POLICY_SETTINGS.items():
        raw = get_setting(db, key, default)
        try:
            values[key] = parse_setting(key, raw)
        except ValueError:
            logger.error("Invalid system setting %s=%r, falling back to %r", key, raw, default)
            values[key] = parse_setting(key, default)

    return PenaltyPolicy(
        fee_per_day=values["LATE_FEE_PER_DAY"],
        ban_multiplier=values["BAN_MULTIPLIER"],
        max_active_loans=values["MAX_ACTIVE_LOANS"],
        currency=values["CURRENCY"],
    )
