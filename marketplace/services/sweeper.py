"""Periodic expiry of stale offers and listings plus escrow auto-release.

Every step is a conditional write, so overlapping runs are harmless: a row
already moved by another run simply no longer matches.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import uuid

from prometheus_client import Counter
from sqlalchemy import update

from ..database import session_scope
from ..models import Listing, Offer, utcnow
from ..utils.audit import record_event
from . import escrow
from .transitions import LIVE_OFFER_STATES, ListingStatus, OfferStatus, check_transition


logger = logging.getLogger("marketplace.sweeper")

SWEEP_COUNTER = Counter("marketplace_sweeper_items_total", "Items moved by the expiry sweeper", ["kind"])


@dataclass
class SweepResult:
    expired_offers: int = 0
    expired_listings: int = 0
    released_transactions: List[uuid.UUID] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "expired_offers": self.expired_offers,
            "expired_listings": self.expired_listings,
            "released_transactions": [str(t) for t in self.released_transactions],
        }


def expire_offers(now: datetime) -> int:
    for state in LIVE_OFFER_STATES:
        check_transition("offer", state, OfferStatus.EXPIRED)
    with session_scope() as db:
        result = db.execute(
            update(Offer)
            .where(Offer.status.in_(LIVE_OFFER_STATES), Offer.expires_at < now)
            .values(status=OfferStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            record_event(db, "offers.expired", None, {"count": count})
    return count


def expire_listings(now: datetime) -> int:
    check_transition("listing", ListingStatus.ACTIVE, ListingStatus.EXPIRED)
    with session_scope() as db:
        result = db.execute(
            update(Listing)
            .where(
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.expires_at.is_not(None),
                Listing.expires_at < now,
            )
            .values(status=ListingStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            record_event(db, "listings.expired", None, {"count": count})
    return count


def run_once(now: Optional[datetime] = None) -> SweepResult:
    now = now or utcnow()
    result = SweepResult()
    # Steps are independent; a failure in one is logged and the rest still run
    try:
        result.expired_offers = expire_offers(now)
    except Exception:
        logger.exception("offer expiry failed")
    try:
        result.expired_listings = expire_listings(now)
    except Exception:
        logger.exception("listing expiry failed")
    try:
        result.released_transactions = escrow.auto_release(now)
    except Exception:
        logger.exception("escrow auto-release failed")
    try:
        SWEEP_COUNTER.labels("offer").inc(result.expired_offers)
        SWEEP_COUNTER.labels("listing").inc(result.expired_listings)
        SWEEP_COUNTER.labels("transaction").inc(len(result.released_transactions))
    except Exception:
        pass
    logger.info(
        "sweep done: offers=%d listings=%d released=%d",
        result.expired_offers, result.expired_listings, len(result.released_transactions),
    )
    return result
