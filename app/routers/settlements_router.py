import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core import config
from app.schemas.loan_schema import LoanOut, SettlementCreate
from app.services.loan_ledger import mark_fee_settled
from app.utils.database import get_db
from app.utils.dependencies import get_clock, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settlements", tags=["Settlements"])


# ------------------------------
# Called by the payment collaborator once a late-fee payment succeeded.
# ------------------------------
def settlement_token_configured() -> bool:
    if config.SETTLEMENT_TOKEN:
        return True
    logger.warning("SETTLEMENT_TOKEN not set; fee settlements will be refused")
    return False


def verify_settlement_token(x_settlement_token: Optional[str] = Header(None, alias="X-Settlement-Token")):
    # no shared secret means nobody can be trusted to mark fees paid
    if not config.SETTLEMENT_TOKEN:
        raise HTTPException(status_code=503, detail="Settlement is not configured")
    if not hmac.compare_digest(x_settlement_token or "", config.SETTLEMENT_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid settlement token")
    return True


@router.post("/{loan_id}", response_model=LoanOut, dependencies=[Depends(verify_settlement_token)])
def settle_fee(
        loan_id: int,
        payload: SettlementCreate,
        db: Session = Depends(get_db),
        clock=Depends(get_clock),
        notifier=Depends(get_notifier),
):
    settled_at = payload.settled_at or clock.now()
    return mark_fee_settled(db, loan_id, payload.reference, settled_at, notifier=notifier)
