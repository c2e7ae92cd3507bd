from fastapi.testclient import TestClient

from marketplace.database import SessionLocal
from marketplace.main import app
from marketplace.models import AuditEvent, Listing, Transaction
from marketplace.services import ledger
from .utils import create_user, fetch, held_transaction, open_transaction


client = TestClient(app)


def _dispute(actor, tx_id, reason="item_not_received", **extra):
    return client.post(f"/transactions/{tx_id}/dispute", headers=actor.headers, json={"reason": reason, **extra})


def test_dispute_requires_held_escrow_and_known_reason():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    pending = open_transaction(client, seller, buyer)

    r = _dispute(buyer, pending["id"])
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "dispute_not_allowed"

    tx = held_transaction(client, create_user("Seller 2"), buyer)
    unknown = _dispute(buyer, tx["id"], reason="changed_my_mind")
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "validation_failed"

    too_much = _dispute(buyer, tx["id"], evidence_urls=[f"https://img/{i}.jpg" for i in range(6)])
    assert too_much.status_code == 422


def test_only_parties_can_open_and_only_once():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    stranger = create_user("Stranger")
    tx = held_transaction(client, seller, buyer)

    assert _dispute(stranger, tx["id"]).status_code == 403

    r = _dispute(seller, tx["id"], reason="payment_issue", evidence_urls=["https://img/a.jpg", "https://img/b.jpg"])
    assert r.status_code == 200, r.text
    assert r.json()["dispute_reason"] == "payment_issue"
    assert r.json()["dispute_evidence"] == ["https://img/a.jpg", "https://img/b.jpg"]

    again = _dispute(buyer, tx["id"])
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "dispute_not_allowed"


def test_review_then_resolve_for_seller_releases_funds():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    admin = create_user("Admin", is_admin=True)
    tx = held_transaction(client, seller, buyer)

    # Nothing to review before a dispute exists
    early = client.patch(f"/transactions/{tx['id']}/dispute/review", headers=admin.headers)
    assert early.status_code == 400
    assert early.json()["error"]["code"] == "no_active_dispute"

    assert _dispute(buyer, tx["id"], reason="fraud", details="Seller unreachable").status_code == 200

    assert client.patch(f"/transactions/{tx['id']}/dispute/review", headers=buyer.headers).status_code == 403
    r = client.patch(f"/transactions/{tx['id']}/dispute/review", headers=admin.headers)
    assert r.status_code == 200, r.text
    assert r.json()["dispute_status"] == "under_review"
    assert r.json()["payment_status"] == "disputed"

    r = client.patch(
        f"/transactions/{tx['id']}/dispute/resolve",
        headers=admin.headers,
        json={"resolution": "resolved_seller", "notes": "Tracking shows delivery"},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["payment_status"] == "released"
    assert body["dispute_status"] == "resolved_seller"
    assert body["resolution_notes"] == "Tracking shows delivery"
    assert body["completed_at"]

    assert fetch(Listing, tx["listing_id"]).status == "sold"
    with SessionLocal() as db:
        assert ledger.balance_of(db, seller.id) == 98000
        types = {e.type for e in db.query(AuditEvent).all()}
    assert {"dispute.opened", "dispute.under_review", "dispute.resolved", "transaction.released"} <= types


def test_resolution_must_be_a_known_outcome():
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    admin = create_user("Admin", is_admin=True)
    tx = held_transaction(client, seller, buyer)
    _dispute(buyer, tx["id"])

    r = client.patch(f"/transactions/{tx['id']}/dispute/resolve", headers=admin.headers, json={"resolution": "split"})
    assert r.status_code == 400
    row = fetch(Transaction, tx["id"])
    assert (row.payment_status, row.dispute_status) == ("disputed", "opened")
