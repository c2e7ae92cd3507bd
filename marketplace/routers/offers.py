import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..models import Offer, User
from ..schemas import AcceptOut, CounterIn, OfferCreateIn, OfferOut, OffersListOut
from ..services import offers as offer_service
from .transactions import tx_out


router = APIRouter(prefix="/offers", tags=["offers"])


def offer_out(o: Offer) -> OfferOut:
    return OfferOut(
        id=str(o.id),
        listing_id=str(o.listing_id),
        buyer_user_id=str(o.buyer_user_id),
        offered_price_cents=o.offered_price_cents,
        counter_price_cents=o.counter_price_cents,
        message=o.message,
        is_exchange_proposal=bool(o.is_exchange_proposal),
        exchange_listing_id=str(o.exchange_listing_id) if o.exchange_listing_id else None,
        status=o.status,
        created_at=o.created_at,
        responded_at=o.responded_at,
        expires_at=o.expires_at,
    )


@router.post("", response_model=OfferOut, status_code=status.HTTP_201_CREATED)
def create_offer(payload: OfferCreateIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer = offer_service.create_offer(
        db,
        payload.listing_id,
        user,
        payload.offered_price_cents,
        message=payload.message,
        is_exchange_proposal=payload.is_exchange_proposal,
        exchange_listing_id=payload.exchange_listing_id,
    )
    return offer_out(offer)


@router.get("/my", response_model=OffersListOut)
def my_offers(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OffersListOut(offers=[offer_out(o) for o in offer_service.list_buyer_offers(db, user)])


@router.get("/listing/{listing_id}", response_model=OffersListOut)
def listing_offers(listing_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return OffersListOut(offers=[offer_out(o) for o in offer_service.list_listing_offers(db, listing_id, user)])


@router.patch("/{offer_id}/accept", response_model=AcceptOut)
def accept(offer_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer, tx = offer_service.accept_offer(db, offer_id, user)
    return AcceptOut(offer=offer_out(offer), transaction=tx_out(tx))


@router.patch("/{offer_id}/reject", response_model=OfferOut)
def reject(offer_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer = offer_service.reject_offer(db, offer_id, user)
    db.refresh(offer)
    return offer_out(offer)


@router.patch("/{offer_id}/counter", response_model=OfferOut)
def counter(offer_id: uuid.UUID, payload: CounterIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer = offer_service.counter_offer(db, offer_id, user, payload.counter_price_cents)
    db.refresh(offer)
    return offer_out(offer)


@router.patch("/{offer_id}/accept-counter", response_model=AcceptOut)
def accept_counter(offer_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer, tx = offer_service.accept_counter(db, offer_id, user)
    return AcceptOut(offer=offer_out(offer), transaction=tx_out(tx))


@router.patch("/{offer_id}/cancel", response_model=OfferOut)
def cancel(offer_id: uuid.UUID, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    offer = offer_service.cancel_offer(db, offer_id, user)
    db.refresh(offer)
    return offer_out(offer)
