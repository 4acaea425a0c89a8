# app/utils/dependencies.py
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.models.user_model import User
from app.utils.database import get_db


# ------------------------------
# Identity comes from the auth gateway in front of this service,
# which forwards the authenticated user id.
# ------------------------------
def get_current_user(
        x_user_id: int = Header(..., alias="X-User-Id"),
        db: Session = Depends(get_db),
) -> User:
    user = db.query(User).filter(User.user_id == x_user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def get_clock(request: Request):
    return request.app.state.clock


def get_notifier(request: Request):
    return request.app.state.notifier
