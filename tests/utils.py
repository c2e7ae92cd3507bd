import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi.testclient import TestClient

from marketplace.auth import create_access_token
from marketplace.database import SessionLocal
from marketplace.models import Listing, User, utcnow


def unique_phone(prefix: str = "+2010", digits: int = 8) -> str:
    """Return a unique phone number using the given prefix and number of random digits."""
    suffix = str(uuid.uuid4().int % (10 ** digits)).zfill(digits)
    return f"{prefix}{suffix}"


@dataclass
class Actor:
    id: uuid.UUID
    phone: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {create_access_token(str(self.id), self.phone)}"}


def create_user(name: str = "User", *, is_admin: bool = False, referred_by: Optional[Actor] = None) -> Actor:
    with SessionLocal() as db:
        user = User(
            phone=unique_phone(),
            name=name,
            is_admin=is_admin,
            referred_by_user_id=referred_by.id if referred_by else None,
        )
        db.add(user)
        db.commit()
        return Actor(id=user.id, phone=user.phone)


def create_listing(seller: Actor, price_cents: int = 100000, *, expires_in: timedelta = timedelta(days=30)) -> uuid.UUID:
    with SessionLocal() as db:
        now = utcnow()
        listing = Listing(
            seller_user_id=seller.id,
            title="Used phone",
            price_cents=price_cents,
            status="active",
            created_at=now,
            updated_at=now,
            expires_at=now + expires_in,
        )
        db.add(listing)
        db.commit()
        return listing.id


def _key(ident):
    return uuid.UUID(ident) if isinstance(ident, str) else ident


def fetch(model, ident):
    """Load a fresh, detached copy of a row."""
    with SessionLocal() as db:
        obj = db.get(model, _key(ident))
        if obj is not None:
            db.expunge(obj)
        return obj


def update_row(model, ident, **values) -> None:
    with SessionLocal() as db:
        obj = db.get(model, _key(ident))
        for k, v in values.items():
            setattr(obj, k, v)
        db.commit()


def open_transaction(client: TestClient, seller: Actor, buyer: Actor, price_cents: int = 100000) -> dict:
    listing_id = create_listing(seller, price_cents)
    r = client.post("/offers", headers=buyer.headers, json={"listing_id": str(listing_id), "offered_price_cents": price_cents})
    assert r.status_code == 201, r.text
    r = client.patch(f"/offers/{r.json()['id']}/accept", headers=seller.headers)
    assert r.status_code == 200, r.text
    return r.json()["transaction"]


def held_transaction(client: TestClient, seller: Actor, buyer: Actor, price_cents: int = 100000) -> dict:
    tx = open_transaction(client, seller, buyer, price_cents)
    r = client.patch(f"/transactions/{tx['id']}/payment", headers=buyer.headers, json={"payment_method": "cash"})
    assert r.status_code == 200, r.text
    assert r.json()["transaction"]["payment_status"] == "held"
    return r.json()["transaction"]
