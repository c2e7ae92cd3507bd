import logging
import uuid
from typing import List, Optional

from prometheus_client import Counter
from sqlalchemy.orm import Session

from ..errors import (
    DisputeAlreadyResolved,
    DisputeNotAllowed,
    InvalidTransition,
    NoActiveDispute,
    NotAuthorized,
    TransactionNotFound,
    ValidationFailed,
)
from ..models import Listing, Transaction, User, utcnow
from ..utils.audit import record_event
from . import escrow
from .transitions import DisputeStatus, ListingStatus, PaymentStatus, compare_and_set


logger = logging.getLogger("marketplace.disputes")

DISPUTE_COUNTER = Counter("marketplace_disputes_total", "Dispute actions", ["action"])

DISPUTE_REASONS = ("item_not_received", "item_not_as_described", "payment_issue", "fraud", "other")
MAX_EVIDENCE = 5
RESOLUTIONS = (DisputeStatus.RESOLVED_BUYER.value, DisputeStatus.RESOLVED_SELLER.value)
_OPEN = (DisputeStatus.OPENED.value, DisputeStatus.UNDER_REVIEW.value)


def _count(action: str) -> None:
    try:
        DISPUTE_COUNTER.labels(action).inc()
    except Exception:
        pass


def _get_tx(db: Session, transaction_id: uuid.UUID) -> Transaction:
    tx = db.get(Transaction, transaction_id)
    if tx is None:
        raise TransactionNotFound()
    return tx


def _require_admin(user: User) -> None:
    if not user.is_admin:
        raise NotAuthorized("Admin access required")


def _raise_for_state(db: Session, tx: Transaction, target: str) -> None:
    db.refresh(tx)
    if tx.dispute_status in RESOLUTIONS:
        raise DisputeAlreadyResolved()
    if tx.dispute_status == DisputeStatus.NONE.value:
        raise NoActiveDispute()
    raise InvalidTransition("dispute", tx.dispute_status, target)


def open_dispute(
    db: Session,
    transaction_id: uuid.UUID,
    actor: User,
    reason: str,
    details: Optional[str] = None,
    evidence: Optional[List[str]] = None,
) -> Transaction:
    tx = _get_tx(db, transaction_id)
    if actor.id not in (tx.buyer_user_id, tx.seller_user_id):
        raise NotAuthorized("Only the buyer or seller can open a dispute")
    if reason not in DISPUTE_REASONS:
        raise ValidationFailed("Unknown dispute reason", details={"allowed": list(DISPUTE_REASONS)})
    evidence = list(evidence or [])
    if len(evidence) > MAX_EVIDENCE:
        raise ValidationFailed(f"At most {MAX_EVIDENCE} evidence URLs")
    reason_text = f"{reason}: {details}" if details else reason

    # Payment and dispute status move together in one statement
    opened = compare_and_set(
        db, Transaction, tx.id, "payment_status", "payment", PaymentStatus.DISPUTED,
        from_states=[PaymentStatus.HELD],
        where=[Transaction.dispute_status == DisputeStatus.NONE.value],
        values={
            "dispute_status": DisputeStatus.OPENED.value,
            "dispute_reason": reason_text,
            "dispute_evidence": evidence,
            "dispute_opened_by_user_id": actor.id,
        },
    )
    if not opened:
        raise DisputeNotAllowed()
    db.refresh(tx)
    _count("opened")
    logger.info("dispute opened on transaction %s by %s (%s)", tx.id, actor.id, reason)
    record_event(db, "dispute.opened", actor.id, {
        "transaction_id": tx.id,
        "reason": reason,
        "evidence_count": len(evidence),
    })
    return tx


def mark_under_review(db: Session, transaction_id: uuid.UUID, admin: User) -> Transaction:
    _require_admin(admin)
    tx = _get_tx(db, transaction_id)
    moved = compare_and_set(
        db, Transaction, tx.id, "dispute_status", "dispute", DisputeStatus.UNDER_REVIEW,
        from_states=[DisputeStatus.OPENED],
        where=[Transaction.payment_status == PaymentStatus.DISPUTED.value],
    )
    if not moved:
        _raise_for_state(db, tx, DisputeStatus.UNDER_REVIEW.value)
    db.refresh(tx)
    _count("under_review")
    record_event(db, "dispute.under_review", admin.id, {"transaction_id": tx.id})
    return tx


def resolve(
    db: Session,
    transaction_id: uuid.UUID,
    admin: User,
    outcome: str,
    notes: Optional[str] = None,
) -> Transaction:
    """Adjudicate an open dispute.

    ``resolved_buyer`` refunds the buyer and puts the listing back on sale;
    ``resolved_seller`` releases the funds exactly as a buyer confirmation
    would.
    """
    _require_admin(admin)
    if outcome not in RESOLUTIONS:
        raise ValidationFailed("resolution must be resolved_buyer or resolved_seller")
    tx = _get_tx(db, transaction_id)
    now = utcnow()
    for_buyer = outcome == DisputeStatus.RESOLVED_BUYER.value
    values = {
        "dispute_status": outcome,
        "dispute_resolved_by_user_id": admin.id,
        "resolution_notes": notes,
    }
    if for_buyer:
        target = PaymentStatus.REFUNDED
        values["refunded_at"] = now
    else:
        target = PaymentStatus.RELEASED
        values["completed_at"] = now
    resolved = compare_and_set(
        db, Transaction, tx.id, "payment_status", "payment", target,
        from_states=[PaymentStatus.DISPUTED],
        where=[Transaction.dispute_status.in_(_OPEN)],
        values=values,
    )
    if not resolved:
        _raise_for_state(db, tx, outcome)
    db.refresh(tx)

    if for_buyer:
        relisted = compare_and_set(
            db, Listing, tx.listing_id, "status", "listing", ListingStatus.ACTIVE,
            from_states=[ListingStatus.RESERVED],
        )
        if not relisted:
            logger.warning("listing %s was not reserved when refunding transaction %s", tx.listing_id, tx.id)
        record_event(db, "transaction.refunded", admin.id, {
            "transaction_id": tx.id,
            "buyer_user_id": tx.buyer_user_id,
            "amount_cents": tx.agreed_price_cents,
        })
    else:
        escrow.settle(db, tx, admin.id, "transaction.released")

    _count(outcome)
    logger.info("dispute on transaction %s resolved as %s by %s", tx.id, outcome, admin.id)
    record_event(db, "dispute.resolved", admin.id, {
        "transaction_id": tx.id,
        "outcome": outcome,
    })
    return tx
