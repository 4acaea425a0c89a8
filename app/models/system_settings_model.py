from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.utils.database import Base


class SystemSetting(Base):
    """
    Runtime-tunable loan policy (LATE_FEE_PER_DAY, BAN_MULTIPLIER,
    MAX_ACTIVE_LOANS, CURRENCY). Values are stored as text and parsed by
    `app.services.policy_settings`; a junk value falls back to the .env default.
    """
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(String(200), nullable=False)
    description = Column(Text)

    # admin who last changed it; kept when that admin is deleted
    updated_by = Column(Integer, ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)
    updated_on = Column(DateTime, server_default=func.now(), onupdate=func.now())
