from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.models.user_model import User
from app.services import cascade
from app.utils.database import get_db
from app.utils.dependencies import require_admin

router = APIRouter(prefix="/admin", tags=["Admin"])


# DELETE USER (with loans)
@router.delete("/users/{user_id}")
def delete_user(
        user_id: int,
        request: Request,
        admin: User = Depends(require_admin),
        db: Session = Depends(get_db),
):
    if user_id == admin.user_id:
        raise HTTPException(400, "You cannot delete your own account")
    removed = cascade.delete_user(db, user_id)
    request.app.state.popular_cache.invalidate()
    return {"message": "User deleted successfully", "removed": removed}


# DELETE BOOK (with loans)
@router.delete("/books/{book_id}", dependencies=[Depends(require_admin)])
def delete_book(book_id: int, request: Request, db: Session = Depends(get_db)):
    removed = cascade.delete_book(db, book_id)
    request.app.state.popular_cache.invalidate()
    return {"message": "Book deleted successfully", "removed": removed}
