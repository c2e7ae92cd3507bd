"""Lifecycle tables for offers, escrow payments, disputes and listings.

Every status change in the core goes through ``compare_and_set``: the move is
first checked against the table, then written as a conditional UPDATE
whose WHERE clause repeats the allowed source states. A rowcount of zero
means another writer got there first.
"""
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..errors import InvalidTransition
from ..models import utcnow


class OfferStatus(str, Enum):
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class DisputeStatus(str, Enum):
    NONE = "none"
    OPENED = "opened"
    UNDER_REVIEW = "under_review"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    RESERVED = "reserved"
    SOLD = "sold"
    EXPIRED = "expired"
    DELETED = "deleted"


class IntentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


O, P, D, L, I = OfferStatus, PaymentStatus, DisputeStatus, ListingStatus, IntentStatus

TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
    "offer": {
        O.PENDING.value: {O.ACCEPTED.value, O.REJECTED.value, O.COUNTERED.value, O.EXPIRED.value},
        O.COUNTERED.value: {O.ACCEPTED.value, O.REJECTED.value, O.EXPIRED.value},
    },
    "payment": {
        P.PENDING.value: {P.HELD.value},
        P.HELD.value: {P.RELEASED.value, P.REFUNDED.value, P.DISPUTED.value},
        P.DISPUTED.value: {P.RELEASED.value, P.REFUNDED.value},
    },
    "dispute": {
        D.NONE.value: {D.OPENED.value},
        D.OPENED.value: {D.UNDER_REVIEW.value, D.RESOLVED_BUYER.value, D.RESOLVED_SELLER.value},
        D.UNDER_REVIEW.value: {D.RESOLVED_BUYER.value, D.RESOLVED_SELLER.value},
    },
    "listing": {
        L.ACTIVE.value: {L.RESERVED.value, L.EXPIRED.value},
        L.RESERVED.value: {L.SOLD.value, L.ACTIVE.value},
    },
    "intent": {
        I.PENDING.value: {I.PAID.value, I.FAILED.value},
        # A decline can be followed by a capture on the same order
        I.FAILED.value: {I.PAID.value},
        I.PAID.value: {I.REFUNDED.value},
    },
}

LIVE_OFFER_STATES = (O.PENDING.value, O.COUNTERED.value)
LIVE_PAYMENT_STATES = (P.PENDING.value, P.HELD.value, P.DISPUTED.value)


def _value(state: Any) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def can_transition(machine: str, current: Any, target: Any) -> bool:
    return _value(target) in TRANSITIONS[machine].get(_value(current), set())


def check_transition(machine: str, current: Any, target: Any) -> None:
    if not can_transition(machine, current, target):
        raise InvalidTransition(machine, _value(current), _value(target))


def sources_for(machine: str, target: Any) -> Set[str]:
    t = _value(target)
    return {src for src, dests in TRANSITIONS[machine].items() if t in dests}


def compare_and_set(
    db: Session,
    model,
    ident,
    column: str,
    machine: str,
    target: Any,
    *,
    from_states: Optional[Iterable[Any]] = None,
    where: Iterable[Any] = (),
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Move ``model.column`` of row ``ident`` to ``target`` if it is still in an allowed source state.

    ``from_states`` narrows the table's sources (e.g. accept only from
    pending); states outside the table are refused up front.
    """
    allowed = sources_for(machine, target)
    if from_states is not None:
        requested = {_value(s) for s in from_states}
        for src in requested - allowed:
            raise InvalidTransition(machine, src, _value(target))
        allowed = requested
    col = getattr(model, column)
    new_values: Dict[str, Any] = {column: _value(target)}
    if hasattr(model, "updated_at"):
        new_values["updated_at"] = utcnow()
    new_values.update(values or {})
    stmt = (
        update(model)
        .where(model.id == ident, col.in_(sorted(allowed)), *where)
        .values(**new_values)
    )
    result = db.execute(stmt)
    return result.rowcount == 1
