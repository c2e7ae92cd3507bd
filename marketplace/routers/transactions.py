import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db, require_admin
from ..models import Transaction, User
from ..schemas import DisputeIn, PaymentIn, PaymentOut, ResolveIn, TransactionOut, TransactionsListOut
from ..services import disputes, escrow


router = APIRouter(prefix="/transactions", tags=["transactions"])


def tx_out(t: Transaction) -> TransactionOut:
    return TransactionOut(
        id=str(t.id),
        offer_id=str(t.offer_id) if t.offer_id else None,
        listing_id=str(t.listing_id),
        buyer_user_id=str(t.buyer_user_id),
        seller_user_id=str(t.seller_user_id),
        agreed_price_cents=t.agreed_price_cents,
        platform_fee_cents=t.platform_fee_cents,
        seller_receives_cents=t.seller_receives_cents,
        currency_code=t.currency_code,
        payment_method=t.payment_method,
        payment_status=t.payment_status,
        escrow_hold_until=t.escrow_hold_until,
        buyer_confirmation=bool(t.buyer_confirmation),
        seller_confirmation=bool(t.seller_confirmation),
        dispute_status=t.dispute_status,
        dispute_reason=t.dispute_reason,
        dispute_evidence=list(t.dispute_evidence or []),
        resolution_notes=t.resolution_notes,
        completed_at=t.completed_at,
        refunded_at=t.refunded_at,
        created_at=t.created_at,
    )


@router.get("", response_model=TransactionsListOut)
def list_transactions(
    role: str = Query(default="all", pattern="^(all|buyer|seller)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = escrow.list_transactions(db, user, role, limit=limit, offset=offset)
    return TransactionsListOut(transactions=[tx_out(t) for t in rows])


@router.get("/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tx_out(escrow.get_transaction(db, transaction_id, user))


@router.patch("/{transaction_id}/payment", response_model=PaymentOut)
def initiate_payment(
    transaction_id: uuid.UUID,
    payload: PaymentIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    tx, intent, iframe_url = escrow.initiate_payment(db, transaction_id, user, payload.payment_method)
    db.refresh(tx)
    return PaymentOut(
        transaction=tx_out(tx),
        payment_key=intent.provider_payment_key if intent else None,
        provider_order_id=intent.provider_order_id if intent else None,
        iframe_url=iframe_url,
    )


@router.patch("/{transaction_id}/confirm", response_model=TransactionOut)
def confirm_receipt(transaction_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return tx_out(escrow.confirm_receipt(db, transaction_id, user))


@router.post("/{transaction_id}/dispute", response_model=TransactionOut)
def open_dispute(
    transaction_id: uuid.UUID,
    payload: DisputeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    tx = disputes.open_dispute(
        db, transaction_id, user, payload.reason,
        details=payload.details,
        evidence=payload.evidence_urls,
    )
    return tx_out(tx)


@router.patch("/{transaction_id}/dispute/review", response_model=TransactionOut)
def review_dispute(transaction_id: uuid.UUID, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return tx_out(disputes.mark_under_review(db, transaction_id, admin))


@router.patch("/{transaction_id}/dispute/resolve", response_model=TransactionOut)
def resolve_dispute(
    transaction_id: uuid.UUID,
    payload: ResolveIn,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return tx_out(disputes.resolve(db, transaction_id, admin, payload.resolution, notes=payload.notes))
