from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from daggergm.db.models import User
from daggergm.db.session import get_db
from daggergm.modules.auth.deps import require_admin_token, require_user_token
from daggergm.modules.auth.identity import resolve_user_id
from daggergm.modules.credits.errors import CreditError
from daggergm.modules.credits.ledger import CreditLedger
from daggergm.modules.credits.schemas import CreditBalanceOut, CreditGrantRequest, CreditTransactionOut

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


def _token_user_id(token: str = Depends(require_user_token)) -> str:
    return resolve_user_id(token)


@router.get("/balance", response_model=CreditBalanceOut)
def get_balance(
    user_id: str = Depends(_token_user_id),
    db: Session = Depends(get_db),
):
    with db.begin():
        return CreditLedger().get_balance_summary(db, user_id)


@router.get("/transactions", response_model=list[CreditTransactionOut])
def list_transactions(
    limit: int = 50,
    offset: int = 0,
    user_id: str = Depends(_token_user_id),
    db: Session = Depends(get_db),
):
    with db.begin():
        return CreditLedger().list_transactions(db, user_id, limit=limit, offset=offset)


@router.post("/grants", response_model=CreditBalanceOut, status_code=status.HTTP_201_CREATED)
def grant_credits(
    payload: CreditGrantRequest,
    _admin: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    ledger = CreditLedger()
    try:
        with db.begin():
            if db.get(User, payload.user_id) is None:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail={"code": "NOT_FOUND", "message": f"user not found: {payload.user_id}"},
                )
            metadata = {"reference": payload.reference} if payload.reference else {}
            ledger.add_credits(db, payload.user_id, payload.amount, payload.source, metadata)
    except CreditError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc
    with db.begin():
        return ledger.get_balance_summary(db, payload.user_id)
