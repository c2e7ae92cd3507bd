from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..models import User
from ..schemas import (
    LedgerEntryOut,
    LedgerPageOut,
    WalletOut,
    WithdrawIn,
    WithdrawalOut,
    WithdrawalsListOut,
)
from ..services import ledger


router = APIRouter(prefix="/wallet", tags=["wallet"])


def _withdrawal_out(w) -> WithdrawalOut:
    return WithdrawalOut(
        id=str(w.id),
        amount_cents=w.amount_cents,
        method=w.method,
        status=w.status,
        created_at=w.created_at,
    )


@router.get("", response_model=WalletOut)
def get_wallet(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return WalletOut(**ledger.wallet_summary(db, user.id))


@router.get("/transactions", response_model=LedgerPageOut)
def wallet_transactions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    entries = ledger.list_entries(db, user.id, limit=limit, offset=offset)
    return LedgerPageOut(
        entries=[
            LedgerEntryOut(
                id=str(e.id),
                type=e.type,
                amount_cents=e.amount_cents,
                balance_after_cents=e.balance_after_cents,
                description=e.description,
                reference_id=e.reference_id,
                reference_type=e.reference_type,
                status=e.status,
                created_at=e.created_at,
            )
            for e in entries
        ],
        limit=limit,
        offset=offset,
    )


@router.get("/withdrawals", response_model=WithdrawalsListOut)
def withdrawals(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return WithdrawalsListOut(withdrawals=[_withdrawal_out(w) for w in ledger.list_withdrawals(db, user.id)])


@router.post("/withdraw", response_model=WithdrawalOut, status_code=status.HTTP_201_CREATED)
def withdraw(payload: WithdrawIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    wr = ledger.request_withdrawal(db, user, payload.amount_cents, payload.method, payload.account_details)
    return _withdrawal_out(wr)
