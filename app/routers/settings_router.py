from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.models.system_settings_model import SystemSetting
from app.models.user_model import User
from app.schemas.settings_schema import SettingCreate, SettingOut, SettingPatch
from app.services.policy_settings import parse_setting
from app.utils.database import get_db
from app.utils.dependencies import require_admin

router = APIRouter(prefix="/settings", tags=["Settings"])


def _validated(key: str, value: str) -> str:
    try:
        return str(parse_setting(key, value))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("", response_model=list[SettingOut])
def list_settings(db: Session = Depends(get_db)):
    return db.query(SystemSetting).order_by(SystemSetting.key.asc()).all()


@router.post("", response_model=SettingOut, status_code=status.HTTP_201_CREATED)
def create_setting(
        payload: SettingCreate,
        admin: User = Depends(require_admin),
        db: Session = Depends(get_db),
):
    existing = db.query(SystemSetting).filter(SystemSetting.key == payload.key).first()
    if existing:
        raise HTTPException(status_code=409, detail="Setting key already exists")

    obj = SystemSetting(
        key=payload.key,
        value=_validated(payload.key, payload.value),
        description=payload.description.strip(),
        updated_by=admin.user_id,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@router.patch("", response_model=SettingOut)
def update_setting(
        payload: SettingPatch,
        admin: User = Depends(require_admin),
        db: Session = Depends(get_db),
):
    obj = db.query(SystemSetting).filter(SystemSetting.key == payload.key).first()
    if not obj:
        raise HTTPException(404, "Setting not found")

    obj.value = _validated(payload.key, payload.value)
    obj.updated_by = admin.user_id
    db.commit()
    db.refresh(obj)
    return obj
