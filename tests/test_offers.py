from datetime import timedelta

from fastapi.testclient import TestClient

from marketplace.main import app
from marketplace.models import Listing, Offer, utcnow
from .utils import create_listing, create_user, fetch, update_row


client = TestClient(app)


def _offer(buyer, listing_id, price=90000, **extra):
    return client.post(
        "/offers",
        headers=buyer.headers,
        json={"listing_id": str(listing_id), "offered_price_cents": price, **extra},
    )


def test_create_offer_and_guards():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller, 120000)

    r = _offer(buyer, listing_id, 100000, message="Is it still available?")
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "pending"
    assert body["offered_price_cents"] == 100000
    assert fetch(Listing, listing_id).offer_count == 1

    # One live offer per buyer per listing
    dup = _offer(buyer, listing_id, 95000)
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "duplicate_offer"

    own = _offer(seller, listing_id)
    assert own.status_code == 400
    assert own.json()["error"]["code"] == "self_offer_forbidden"

    missing = _offer(buyer, "00000000-0000-0000-0000-000000000000")
    assert missing.status_code == 404


def test_offer_validation_errors():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller)
    zero = _offer(buyer, listing_id, 0)
    assert zero.status_code == 422
    err = zero.json()["error"]
    assert err["code"] == "validation_failed"
    assert ["body", "offered_price_cents"] in [e["loc"] for e in err["details"]["errors"]]
    assert _offer(buyer, listing_id, 1000, message="x" * 501).status_code == 422

    bad_id = client.patch("/offers/not-a-uuid/accept", headers=seller.headers)
    assert bad_id.status_code == 422
    assert bad_id.json()["error"]["code"] == "validation_failed"


def test_accept_opens_transaction_and_rejects_competitors():
    seller = create_user("Seller")
    b1 = create_user("Buyer 1")
    b2 = create_user("Buyer 2")
    listing_id = create_listing(seller, 120000)
    o1 = _offer(b1, listing_id, 100000).json()
    o2 = _offer(b2, listing_id, 90000).json()

    r = client.patch(f"/offers/{o1['id']}/accept", headers=seller.headers)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["offer"]["status"] == "accepted"
    tx = data["transaction"]
    assert tx["agreed_price_cents"] == 100000
    assert tx["platform_fee_cents"] == 4000
    assert tx["seller_receives_cents"] == 98000
    assert tx["payment_status"] == "pending"
    assert tx["dispute_status"] == "none"
    assert tx["buyer_user_id"] == str(b1.id)

    assert fetch(Offer, o2["id"]).status == "rejected"
    assert fetch(Listing, listing_id).status == "reserved"

    # The listing is no longer open for offers
    b3 = create_user("Buyer 3")
    late = _offer(b3, listing_id)
    assert late.status_code == 400
    assert late.json()["error"]["code"] == "listing_unavailable"


def test_only_seller_can_respond_and_accept_is_single_shot():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller)
    offer = _offer(buyer, listing_id).json()

    r = client.patch(f"/offers/{offer['id']}/accept", headers=buyer.headers)
    assert r.status_code == 403

    assert client.patch(f"/offers/{offer['id']}/accept", headers=seller.headers).status_code == 200
    again = client.patch(f"/offers/{offer['id']}/accept", headers=seller.headers)
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "offer_not_pending"


def test_counter_then_accept_counter_uses_counter_price():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller, 120000)
    offer = _offer(buyer, listing_id, 90000).json()

    r = client.patch(f"/offers/{offer['id']}/counter", headers=seller.headers, json={"counter_price_cents": 110000})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "countered"
    assert r.json()["counter_price_cents"] == 110000

    # A countered offer is answered by the buyer, not re-accepted by the seller
    assert client.patch(f"/offers/{offer['id']}/accept", headers=seller.headers).status_code == 400
    assert client.patch(f"/offers/{offer['id']}/accept-counter", headers=seller.headers).status_code == 403

    r = client.patch(f"/offers/{offer['id']}/accept-counter", headers=buyer.headers)
    assert r.status_code == 200, r.text
    tx = r.json()["transaction"]
    assert tx["agreed_price_cents"] == 110000
    assert tx["platform_fee_cents"] == 4400
    assert tx["seller_receives_cents"] == 107800


def test_reject_from_countered_and_cancel():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller)
    offer = _offer(buyer, listing_id).json()
    client.patch(f"/offers/{offer['id']}/counter", headers=seller.headers, json={"counter_price_cents": 99000})
    r = client.patch(f"/offers/{offer['id']}/reject", headers=seller.headers)
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"
    assert client.patch(f"/offers/{offer['id']}/reject", headers=seller.headers).status_code == 400

    # A rejected offer no longer blocks a fresh one
    second = _offer(buyer, listing_id, 95000)
    assert second.status_code == 201
    r = client.patch(f"/offers/{second.json()['id']}/cancel", headers=seller.headers)
    assert r.status_code == 403
    r = client.patch(f"/offers/{second.json()['id']}/cancel", headers=buyer.headers)
    assert r.status_code == 200
    assert r.json()["status"] == "rejected"


def test_expired_offer_cannot_be_accepted():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller)
    offer = _offer(buyer, listing_id).json()
    update_row(Offer, offer["id"], expires_at=utcnow() - timedelta(minutes=1))
    r = client.patch(f"/offers/{offer['id']}/accept", headers=seller.headers)
    assert r.status_code == 400
    assert fetch(Listing, listing_id).status == "active"


def test_expired_listing_refuses_offers():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller, expires_in=timedelta(seconds=-1))
    r = _offer(buyer, listing_id)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "listing_unavailable"


def test_offer_listings():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    listing_id = create_listing(seller)
    _offer(buyer, listing_id)

    mine = client.get("/offers/my", headers=buyer.headers)
    assert mine.status_code == 200
    assert len(mine.json()["offers"]) == 1

    assert client.get(f"/offers/listing/{listing_id}", headers=seller.headers).json()["offers"][0]["buyer_user_id"] == str(buyer.id)
    assert client.get(f"/offers/listing/{listing_id}", headers=buyer.headers).status_code == 403
