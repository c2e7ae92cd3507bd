"""Escrow transactions: opening, payment, release and settlement."""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import session_scope
from ..errors import (
    IntegrityViolation,
    ListingUnavailable,
    NotAuthorized,
    NotHeld,
    PaymentAlreadyInitiated,
    TransactionNotFound,
    ValidationFailed,
)
from ..models import Listing, Offer, PaymentIntent, Transaction, User, utcnow
from ..payment_gateway import IFRAME_URL, BuyerInfo, PaymobGateway, get_gateway
from ..utils.after_commit import run_after_commit
from ..utils.audit import record_event
from ..utils.fees import ensure_fee_user, split_price
from . import ledger
from .transitions import (
    DisputeStatus,
    IntentStatus,
    ListingStatus,
    PaymentStatus,
    compare_and_set,
)


logger = logging.getLogger("marketplace.escrow")

ESCROW_COUNTER = Counter("marketplace_escrow_transitions_total", "Escrow transitions", ["op", "result"])
RELEASED_CENTS = Counter("marketplace_escrow_released_cents_total", "Released to sellers (cents)", ["currency"])

PAYMENT_METHODS = ("cash", "wallet", "card", "fawry", "instapay", "vodafone_cash")
ELECTRONIC_METHODS = tuple(m for m in PAYMENT_METHODS if m != "cash")


def _count(op: str, result: str) -> None:
    try:
        ESCROW_COUNTER.labels(op, result).inc()
    except Exception:
        pass


def compute_fees(agreed_price_cents: int) -> Tuple[int, int]:
    """Return (platform_fee_cents, seller_receives_cents)."""
    if agreed_price_cents <= 0:
        raise ValidationFailed("Price must be positive")
    return split_price(agreed_price_cents)


def _get_tx(db: Session, transaction_id: uuid.UUID) -> Transaction:
    tx = db.get(Transaction, transaction_id)
    if tx is None:
        raise TransactionNotFound()
    return tx


def open_transaction(db: Session, offer: Offer, agreed_price_cents: int) -> Transaction:
    """Reserve the listing and open a pending transaction for an accepted offer.

    Runs inside the caller's unit of work; on ``ListingUnavailable`` the
    caller's transaction must be rolled back.
    """
    now = utcnow()
    reserved = compare_and_set(
        db, Listing, offer.listing_id, "status", "listing", ListingStatus.RESERVED,
        from_states=[ListingStatus.ACTIVE],
        where=[or_(Listing.expires_at.is_(None), Listing.expires_at > now)],
    )
    if not reserved:
        _count("open", "listing_unavailable")
        raise ListingUnavailable()
    listing = db.get(Listing, offer.listing_id)
    platform_fee, seller_receives = compute_fees(agreed_price_cents)
    tx = Transaction(
        offer_id=offer.id,
        listing_id=listing.id,
        buyer_user_id=offer.buyer_user_id,
        seller_user_id=listing.seller_user_id,
        agreed_price_cents=agreed_price_cents,
        platform_fee_cents=platform_fee,
        seller_receives_cents=seller_receives,
        currency_code=settings.DEFAULT_CURRENCY,
        payment_status=PaymentStatus.PENDING.value,
        dispute_status=DisputeStatus.NONE.value,
    )
    try:
        with db.begin_nested():
            db.add(tx)
    except IntegrityError:
        # Another live transaction holds this listing
        _count("open", "conflict")
        raise ListingUnavailable()
    _count("open", "ok")
    record_event(db, "transaction.opened", listing.seller_user_id, {
        "transaction_id": tx.id,
        "offer_id": offer.id,
        "listing_id": listing.id,
        "buyer_user_id": tx.buyer_user_id,
        "agreed_price_cents": agreed_price_cents,
        "platform_fee_cents": platform_fee,
        "seller_receives_cents": seller_receives,
    })
    return tx


def _live_intent(db: Session, transaction_id: uuid.UUID) -> Optional[PaymentIntent]:
    return (
        db.query(PaymentIntent)
        .filter(
            PaymentIntent.transaction_id == transaction_id,
            PaymentIntent.status.in_([IntentStatus.PENDING.value, IntentStatus.PAID.value]),
        )
        .one_or_none()
    )


def _reuse_or_refuse(intent: PaymentIntent, method: str, gateway: PaymobGateway) -> Tuple[PaymentIntent, str]:
    if intent.status == IntentStatus.PENDING.value and intent.payment_method == method:
        return intent, IFRAME_URL.format(iframe_id=gateway.iframe_id, token=intent.provider_payment_key)
    raise PaymentAlreadyInitiated(details={"payment_method": intent.payment_method, "intent_status": intent.status})


def initiate_payment(
    db: Session,
    transaction_id: uuid.UUID,
    buyer: User,
    method: str,
    gateway: Optional[PaymobGateway] = None,
) -> Tuple[Transaction, Optional[PaymentIntent], Optional[str]]:
    if method not in PAYMENT_METHODS:
        raise ValidationFailed("Unsupported payment method", details={"payment_method": method})
    tx = _get_tx(db, transaction_id)
    if tx.buyer_user_id != buyer.id:
        raise NotAuthorized("Only the buyer can pay for this transaction")
    if tx.payment_status != PaymentStatus.PENDING.value:
        raise PaymentAlreadyInitiated()

    gateway = gateway or get_gateway()
    live = _live_intent(db, tx.id)

    if method == "cash":
        if live is not None:
            raise PaymentAlreadyInitiated(details={"payment_method": live.payment_method})
        held = compare_and_set(
            db, Transaction, tx.id, "payment_status", "payment", PaymentStatus.HELD,
            values={"payment_method": "cash", "escrow_hold_until": None},
        )
        if not held:
            raise PaymentAlreadyInitiated()
        _count("pay_cash", "ok")
        record_event(db, "transaction.payment_held", buyer.id, {
            "transaction_id": tx.id,
            "payment_method": "cash",
        })
        return tx, None, None

    if live is not None:
        intent, url = _reuse_or_refuse(live, method, gateway)
        _count("pay_electronic", "reused")
        return tx, intent, url

    # Provider call happens before any write of ours
    result = gateway.create_order_and_payment_key(
        tx.agreed_price_cents,
        BuyerInfo(phone=buyer.phone, name=buyer.name, email=buyer.email),
    )
    intent = PaymentIntent(
        transaction_id=tx.id,
        provider="paymob",
        payment_method=method,
        provider_order_id=result.order_id,
        provider_payment_key=result.payment_key,
        amount_cents=tx.agreed_price_cents,
        status=IntentStatus.PENDING.value,
    )
    try:
        with db.begin_nested():
            db.add(intent)
    except IntegrityError:
        live = _live_intent(db, tx.id)
        if live is None:
            raise
        intent, url = _reuse_or_refuse(live, method, gateway)
        _count("pay_electronic", "reused")
        return tx, intent, url
    tx.payment_method = method
    tx.updated_at = utcnow()
    db.flush()
    _count("pay_electronic", "ok")
    record_event(db, "transaction.payment_initiated", buyer.id, {
        "transaction_id": tx.id,
        "payment_method": method,
        "provider_order_id": result.order_id,
        "amount_cents": tx.agreed_price_cents,
    })
    return tx, intent, result.iframe_url


def _intent_by_order(db: Session, provider_order_id: Any) -> Optional[PaymentIntent]:
    if provider_order_id is None:
        return None
    return (
        db.query(PaymentIntent)
        .filter(PaymentIntent.provider_order_id == str(provider_order_id))
        .one_or_none()
    )


def _supersede_live_intent(db: Session, intent: PaymentIntent) -> bool:
    """Clear the way for a late capture on a declined order.

    A newer pending attempt on the same transaction is failed so the
    captured order can become the live one. Returns False when another
    order already captured the payment.
    """
    live = _live_intent(db, intent.transaction_id)
    if live is None or live.id == intent.id:
        return True
    if live.status == IntentStatus.PAID.value:
        logger.error(
            "order %s captured after transaction %s was already paid through order %s",
            intent.provider_order_id, intent.transaction_id, live.provider_order_id,
        )
        _count("confirm_payment", "double_capture")
        return False
    compare_and_set(
        db, PaymentIntent, live.id, "status", "intent", IntentStatus.FAILED,
        from_states=[IntentStatus.PENDING],
        values={"webhook_data": {"superseded_by": intent.provider_order_id}},
    )
    record_event(db, "transaction.payment_superseded", None, {
        "transaction_id": intent.transaction_id,
        "provider_order_id": live.provider_order_id,
        "superseded_by": intent.provider_order_id,
    })
    return True


def on_payment_confirmed(db: Session, provider_order_id: Any, payload: Dict[str, Any]) -> Optional[Transaction]:
    """Apply a successful provider callback. Safe to call any number of times."""
    intent = _intent_by_order(db, provider_order_id)
    if intent is None:
        logger.warning("payment confirmation for unknown order %s", provider_order_id)
        _count("confirm_payment", "unknown_order")
        return None
    paid_cents = payload.get("amount_cents")
    if paid_cents is not None and int(paid_cents) != intent.amount_cents:
        logger.error(
            "order %s paid %s cents, expected %s; not placing funds in escrow",
            provider_order_id, paid_cents, intent.amount_cents,
        )
        _count("confirm_payment", "amount_mismatch")
        return None
    if intent.status == IntentStatus.FAILED.value and not _supersede_live_intent(db, intent):
        return None
    moved = compare_and_set(
        db, PaymentIntent, intent.id, "status", "intent", IntentStatus.PAID,
        from_states=[IntentStatus.PENDING, IntentStatus.FAILED],
        values={"webhook_data": payload},
    )
    if not moved:
        _count("confirm_payment", "duplicate")
        return None
    hold_until = utcnow() + settings.escrow_hold
    held = compare_and_set(
        db, Transaction, intent.transaction_id, "payment_status", "payment", PaymentStatus.HELD,
        values={"escrow_hold_until": hold_until, "payment_method": intent.payment_method},
    )
    if not held:
        logger.error("order %s paid but transaction %s is no longer pending", provider_order_id, intent.transaction_id)
        _count("confirm_payment", "tx_not_pending")
        return None
    tx = db.get(Transaction, intent.transaction_id)
    _count("confirm_payment", "ok")
    record_event(db, "transaction.payment_held", tx.buyer_user_id, {
        "transaction_id": tx.id,
        "payment_method": intent.payment_method,
        "provider_order_id": intent.provider_order_id,
        "escrow_hold_until": hold_until.isoformat(),
    })
    return tx


def on_payment_failed(db: Session, provider_order_id: Any, payload: Dict[str, Any]) -> bool:
    intent = _intent_by_order(db, provider_order_id)
    if intent is None:
        return False
    moved = compare_and_set(
        db, PaymentIntent, intent.id, "status", "intent", IntentStatus.FAILED,
        from_states=[IntentStatus.PENDING],
        values={"webhook_data": payload},
    )
    if moved:
        _count("payment_failed", "ok")
        record_event(db, "transaction.payment_failed", None, {
            "transaction_id": intent.transaction_id,
            "provider_order_id": intent.provider_order_id,
        })
    return moved


def on_payment_refunded(db: Session, provider_order_id: Any, payload: Dict[str, Any]) -> bool:
    intent = _intent_by_order(db, provider_order_id)
    if intent is None:
        return False
    moved = compare_and_set(
        db, PaymentIntent, intent.id, "status", "intent", IntentStatus.REFUNDED,
        from_states=[IntentStatus.PAID],
        values={"webhook_data": payload},
    )
    if moved:
        _count("payment_refunded", "ok")
        record_event(db, "transaction.provider_refund", None, {
            "transaction_id": intent.transaction_id,
            "provider_order_id": intent.provider_order_id,
        })
    return moved


def settle(db: Session, tx: Transaction, actor_id: Optional[uuid.UUID], event_type: str) -> None:
    """Money and listing effects of a release. The status move is the caller's."""
    sold = compare_and_set(
        db, Listing, tx.listing_id, "status", "listing", ListingStatus.SOLD,
        from_states=[ListingStatus.RESERVED],
    )
    if not sold:
        # Unreachable while the reservation CAS holds; keep the money in escrow
        raise IntegrityViolation(
            "Listing was not reserved for a released transaction",
            details={"transaction_id": str(tx.id), "listing_id": str(tx.listing_id)},
        )
    ledger.credit(
        db,
        tx.seller_user_id,
        tx.seller_receives_cents,
        reference_id=str(tx.id),
        reference_type="transaction",
        description="Sale proceeds",
    )
    platform_cut = tx.agreed_price_cents - tx.seller_receives_cents
    if platform_cut > 0:
        fee_user = ensure_fee_user(db)
        ledger.credit(
            db,
            fee_user.id,
            platform_cut,
            reference_id=str(tx.id),
            reference_type="platform_fee",
            description="Platform fee",
        )
    try:
        RELEASED_CENTS.labels(tx.currency_code).inc(tx.seller_receives_cents)
    except Exception:
        pass
    record_event(db, event_type, actor_id, {
        "transaction_id": tx.id,
        "seller_user_id": tx.seller_user_id,
        "seller_receives_cents": tx.seller_receives_cents,
        "platform_cut_cents": platform_cut,
    })
    run_after_commit(db, ledger.reward_referral, tx.buyer_user_id)


def confirm_receipt(db: Session, transaction_id: uuid.UUID, buyer: User) -> Transaction:
    tx = _get_tx(db, transaction_id)
    if tx.buyer_user_id != buyer.id:
        raise NotAuthorized("Only the buyer can confirm receipt")
    released = compare_and_set(
        db, Transaction, tx.id, "payment_status", "payment", PaymentStatus.RELEASED,
        from_states=[PaymentStatus.HELD],
        where=[Transaction.dispute_status == DisputeStatus.NONE.value],
        values={"buyer_confirmation": True, "completed_at": utcnow()},
    )
    if not released:
        _count("confirm_receipt", "not_held")
        raise NotHeld()
    db.refresh(tx)
    settle(db, tx, buyer.id, "transaction.released")
    _count("confirm_receipt", "ok")
    return tx


def _release_one(transaction_id: uuid.UUID, now: datetime) -> bool:
    with session_scope() as db:
        released = compare_and_set(
            db, Transaction, transaction_id, "payment_status", "payment", PaymentStatus.RELEASED,
            from_states=[PaymentStatus.HELD],
            where=[
                Transaction.dispute_status == DisputeStatus.NONE.value,
                Transaction.escrow_hold_until.is_not(None),
                Transaction.escrow_hold_until < now,
            ],
            values={"completed_at": now},
        )
        if not released:
            return False
        tx = db.get(Transaction, transaction_id)
        settle(db, tx, None, "transaction.auto_released")
    return True


def auto_release(now: Optional[datetime] = None) -> List[uuid.UUID]:
    """Release every undisputed held transaction whose hold has passed.

    Each transaction is settled in its own unit of work; one failure does
    not block the rest.
    """
    now = now or utcnow()
    with session_scope() as db:
        due = db.execute(
            select(Transaction.id).where(
                Transaction.payment_status == PaymentStatus.HELD.value,
                Transaction.dispute_status == DisputeStatus.NONE.value,
                Transaction.escrow_hold_until.is_not(None),
                Transaction.escrow_hold_until < now,
            )
        ).scalars().all()
    released: List[uuid.UUID] = []
    for tx_id in due:
        try:
            if _release_one(tx_id, now):
                released.append(tx_id)
                _count("auto_release", "ok")
        except Exception:
            _count("auto_release", "error")
            logger.exception("auto-release failed for transaction %s", tx_id)
    if released:
        logger.info("auto-released %d transactions", len(released))
    return released


def get_transaction(db: Session, transaction_id: uuid.UUID, user: User) -> Transaction:
    tx = _get_tx(db, transaction_id)
    if user.id not in (tx.buyer_user_id, tx.seller_user_id) and not user.is_admin:
        raise NotAuthorized()
    return tx


def list_transactions(db: Session, user: User, role: str = "all", *, limit: int = 50, offset: int = 0) -> List[Transaction]:
    q = db.query(Transaction)
    if role == "buyer":
        q = q.filter(Transaction.buyer_user_id == user.id)
    elif role == "seller":
        q = q.filter(Transaction.seller_user_id == user.id)
    elif role == "all":
        q = q.filter(or_(Transaction.buyer_user_id == user.id, Transaction.seller_user_id == user.id))
    else:
        raise ValidationFailed("role must be all, buyer or seller")
    return q.order_by(Transaction.created_at.desc()).limit(limit).offset(offset).all()
