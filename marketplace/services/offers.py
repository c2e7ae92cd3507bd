import logging
import uuid
from typing import List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    DuplicateOffer,
    ListingNotFound,
    ListingUnavailable,
    NotAuthorized,
    OfferNotFound,
    OfferNotPending,
    SelfOfferForbidden,
    ValidationFailed,
)
from ..models import Listing, Offer, Transaction, User, utcnow
from ..utils.audit import record_event
from . import escrow
from .transitions import LIVE_OFFER_STATES, ListingStatus, OfferStatus, compare_and_set


logger = logging.getLogger("marketplace.offers")

OFFER_COUNTER = Counter("marketplace_offers_total", "Offer actions", ["action", "result"])

MAX_MESSAGE_LEN = 500


def _count(action: str, result: str) -> None:
    try:
        OFFER_COUNTER.labels(action, result).inc()
    except Exception:
        pass


def _get_offer(db: Session, offer_id: uuid.UUID) -> Offer:
    offer = db.get(Offer, offer_id)
    if offer is None:
        raise OfferNotFound()
    return offer


def _listing_is_open(listing: Listing) -> bool:
    if listing.status != ListingStatus.ACTIVE.value:
        return False
    return listing.expires_at is None or listing.expires_at > utcnow()


def create_offer(
    db: Session,
    listing_id: uuid.UUID,
    buyer: User,
    price_cents: int,
    message: Optional[str] = None,
    is_exchange_proposal: bool = False,
    exchange_listing_id: Optional[uuid.UUID] = None,
) -> Offer:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise ListingNotFound()
    if not _listing_is_open(listing):
        raise ListingUnavailable()
    if listing.seller_user_id == buyer.id:
        raise SelfOfferForbidden()
    if price_cents <= 0:
        raise ValidationFailed("Offered price must be positive")
    if message is not None and len(message) > MAX_MESSAGE_LEN:
        raise ValidationFailed(f"Message must be at most {MAX_MESSAGE_LEN} characters")
    if is_exchange_proposal and exchange_listing_id is not None:
        other = db.get(Listing, exchange_listing_id)
        if other is None or other.seller_user_id != buyer.id or other.status != ListingStatus.ACTIVE.value:
            raise ValidationFailed("Exchange listing must be one of your active listings")

    existing = (
        db.query(Offer.id)
        .filter(
            Offer.listing_id == listing.id,
            Offer.buyer_user_id == buyer.id,
            Offer.status.in_(LIVE_OFFER_STATES),
        )
        .first()
    )
    if existing is not None:
        _count("create", "duplicate")
        raise DuplicateOffer()

    now = utcnow()
    offer = Offer(
        listing_id=listing.id,
        buyer_user_id=buyer.id,
        offered_price_cents=price_cents,
        message=message,
        is_exchange_proposal=is_exchange_proposal,
        exchange_listing_id=exchange_listing_id if is_exchange_proposal else None,
        status=OfferStatus.PENDING.value,
        created_at=now,
        updated_at=now,
        expires_at=now + settings.offer_ttl,
    )
    try:
        with db.begin_nested():
            db.add(offer)
    except IntegrityError:
        _count("create", "duplicate")
        raise DuplicateOffer()
    db.execute(
        update(Listing)
        .where(Listing.id == listing.id)
        .values(offer_count=Listing.offer_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.expire(listing, ["offer_count"])
    _count("create", "ok")
    record_event(db, "offer.created", buyer.id, {
        "offer_id": offer.id,
        "listing_id": listing.id,
        "seller_user_id": listing.seller_user_id,
        "offered_price_cents": price_cents,
    })
    return offer


def _require_seller(db: Session, offer: Offer, seller: User) -> Listing:
    listing = db.get(Listing, offer.listing_id)
    if listing is None or listing.seller_user_id != seller.id:
        raise NotAuthorized("Only the listing's seller can respond to this offer")
    return listing


def _finalize_acceptance(db: Session, offer: Offer, agreed_price_cents: int, actor_id: uuid.UUID) -> Tuple[Offer, Transaction]:
    tx = escrow.open_transaction(db, offer, agreed_price_cents)
    now = utcnow()
    others = db.execute(
        update(Offer)
        .where(
            Offer.listing_id == offer.listing_id,
            Offer.id != offer.id,
            Offer.status.in_(LIVE_OFFER_STATES),
        )
        .values(status=OfferStatus.REJECTED.value, responded_at=now, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    db.refresh(offer)
    record_event(db, "offer.accepted", actor_id, {
        "offer_id": offer.id,
        "listing_id": offer.listing_id,
        "transaction_id": tx.id,
        "agreed_price_cents": agreed_price_cents,
        "auto_rejected": others.rowcount,
    })
    return offer, tx


def accept_offer(db: Session, offer_id: uuid.UUID, seller: User) -> Tuple[Offer, Transaction]:
    """Accept a pending offer, reject its competitors and open the escrow transaction."""
    offer = _get_offer(db, offer_id)
    _require_seller(db, offer, seller)
    if offer.status != OfferStatus.PENDING.value:
        raise OfferNotPending()
    now = utcnow()
    accepted = compare_and_set(
        db, Offer, offer.id, "status", "offer", OfferStatus.ACCEPTED,
        from_states=[OfferStatus.PENDING],
        where=[Offer.expires_at > now],
        values={"responded_at": now},
    )
    if not accepted:
        _count("accept", "lost")
        raise OfferNotPending()
    result = _finalize_acceptance(db, offer, offer.offered_price_cents, seller.id)
    _count("accept", "ok")
    return result


def reject_offer(db: Session, offer_id: uuid.UUID, seller: User) -> Offer:
    offer = _get_offer(db, offer_id)
    _require_seller(db, offer, seller)
    rejected = compare_and_set(
        db, Offer, offer.id, "status", "offer", OfferStatus.REJECTED,
        from_states=LIVE_OFFER_STATES,
        values={"responded_at": utcnow()},
    )
    if not rejected:
        raise OfferNotPending()
    _count("reject", "ok")
    record_event(db, "offer.rejected", seller.id, {"offer_id": offer.id, "listing_id": offer.listing_id})
    return offer


def counter_offer(db: Session, offer_id: uuid.UUID, seller: User, counter_price_cents: int) -> Offer:
    if counter_price_cents <= 0:
        raise ValidationFailed("Counter price must be positive")
    offer = _get_offer(db, offer_id)
    _require_seller(db, offer, seller)
    now = utcnow()
    countered = compare_and_set(
        db, Offer, offer.id, "status", "offer", OfferStatus.COUNTERED,
        from_states=[OfferStatus.PENDING],
        where=[Offer.expires_at > now],
        values={
            "counter_price_cents": counter_price_cents,
            "responded_at": now,
            # The buyer gets a fresh window to answer the counter
            "expires_at": now + settings.offer_ttl,
        },
    )
    if not countered:
        raise OfferNotPending()
    _count("counter", "ok")
    record_event(db, "offer.countered", seller.id, {
        "offer_id": offer.id,
        "buyer_user_id": offer.buyer_user_id,
        "counter_price_cents": counter_price_cents,
    })
    return offer


def cancel_offer(db: Session, offer_id: uuid.UUID, buyer: User) -> Offer:
    offer = _get_offer(db, offer_id)
    if offer.buyer_user_id != buyer.id:
        raise NotAuthorized("Only the buyer can withdraw this offer")
    withdrawn = compare_and_set(
        db, Offer, offer.id, "status", "offer", OfferStatus.REJECTED,
        from_states=LIVE_OFFER_STATES,
        values={"responded_at": utcnow()},
    )
    if not withdrawn:
        raise OfferNotPending()
    db.execute(
        update(Listing)
        .where(Listing.id == offer.listing_id, Listing.offer_count > 0)
        .values(offer_count=Listing.offer_count - 1)
        .execution_options(synchronize_session=False)
    )
    _count("cancel", "ok")
    record_event(db, "offer.withdrawn", buyer.id, {"offer_id": offer.id, "listing_id": offer.listing_id})
    return offer


def accept_counter(db: Session, offer_id: uuid.UUID, buyer: User) -> Tuple[Offer, Transaction]:
    offer = _get_offer(db, offer_id)
    if offer.buyer_user_id != buyer.id:
        raise NotAuthorized("Only the buyer can accept this counter-offer")
    if offer.status != OfferStatus.COUNTERED.value or not offer.counter_price_cents:
        raise OfferNotPending("Offer has no open counter-offer")
    now = utcnow()
    accepted = compare_and_set(
        db, Offer, offer.id, "status", "offer", OfferStatus.ACCEPTED,
        from_states=[OfferStatus.COUNTERED],
        where=[Offer.expires_at > now],
        values={"responded_at": now},
    )
    if not accepted:
        _count("accept_counter", "lost")
        raise OfferNotPending("Offer has no open counter-offer")
    result = _finalize_acceptance(db, offer, offer.counter_price_cents, buyer.id)
    _count("accept_counter", "ok")
    return result


def list_buyer_offers(db: Session, buyer: User) -> List[Offer]:
    return (
        db.query(Offer)
        .filter(Offer.buyer_user_id == buyer.id)
        .order_by(Offer.created_at.desc())
        .all()
    )


def list_listing_offers(db: Session, listing_id: uuid.UUID, seller: User) -> List[Offer]:
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise ListingNotFound()
    if listing.seller_user_id != seller.id:
        raise NotAuthorized()
    return (
        db.query(Offer)
        .filter(Offer.listing_id == listing_id)
        .order_by(Offer.created_at.desc())
        .all()
    )
