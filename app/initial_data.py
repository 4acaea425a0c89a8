# app/initial_data.py
import logging

from app.utils.database import SessionLocal
from app.models.system_settings_model import SystemSetting
from app.services.policy_settings import POLICY_SETTINGS

logger = logging.getLogger(__name__)


def init_seed():
    """Insert missing policy settings; existing values are never overwritten."""
    db = SessionLocal()
    try:
        created = 0
        for key, (default, description, _) in POLICY_SETTINGS.items():
            exists = db.query(SystemSetting).filter(SystemSetting.key == key).first()
            if exists:
                continue
            db.add(SystemSetting(key=key, value=str(default), description=description))
            created += 1
        db.commit()
        logger.info("Seeded %d system setting(s)", created)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
