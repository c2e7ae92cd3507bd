from fastapi.testclient import TestClient

from marketplace.database import SessionLocal
from marketplace.main import app
from marketplace.models import PaymentIntent, Transaction
from marketplace.payment_gateway import PaymobGateway, set_gateway, sign_payload
from .utils import create_user, fetch, open_transaction


client = TestClient(app)

SECRET = "test-hmac-secret"


def _signed_gateway():
    # No API key: orders are mocked, callbacks must carry a valid signature
    gw = PaymobGateway(api_key="", hmac_secret=SECRET)
    set_gateway(gw)
    return gw


def _start_payment(method="card"):
    seller = create_user("Seller")
    buyer = create_user("Buyer")
    tx = open_transaction(client, seller, buyer)
    r = client.patch(f"/transactions/{tx['id']}/payment", headers=buyer.headers, json={"payment_method": method})
    assert r.status_code == 200, r.text
    return tx, r.json()["provider_order_id"]


def _callback(order_id, success=True, pending=False, is_refunded=False, amount_cents=100000):
    return {
        "id": 424242,
        "amount_cents": amount_cents,
        "created_at": "2026-10-19T10:00:00",
        "currency": "EGP",
        "error_occured": False,
        "has_parent_transaction": False,
        "integration_id": 1,
        "is_3d_secure": True,
        "is_auth": False,
        "is_capture": False,
        "is_refunded": is_refunded,
        "is_standalone_payment": True,
        "is_voided": False,
        "order": {"id": order_id},
        "owner": 7,
        "pending": pending,
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
        "success": success,
    }


def _post(obj, signature):
    return client.post("/payments/webhook", params={"hmac": signature}, json={"type": "TRANSACTION", "obj": obj})


def _intent_status(order_id):
    with SessionLocal() as db:
        return db.query(PaymentIntent.status).filter(PaymentIntent.provider_order_id == order_id).scalar()


def test_bad_signature_is_rejected_without_state_change():
    _signed_gateway()
    tx, order_id = _start_payment()
    obj = _callback(order_id)

    r = _post(obj, "deadbeef")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_signature"
    assert client.post("/payments/webhook", json={"obj": obj}).status_code == 400

    # Tampered amount invalidates an otherwise good signature
    sig = sign_payload(obj, SECRET)
    tampered = dict(obj, amount_cents=1)
    assert _post(tampered, sig).status_code == 400

    assert fetch(Transaction, tx["id"]).payment_status == "pending"
    assert _intent_status(order_id) == "pending"


def test_signed_success_holds_funds_and_replay_is_harmless():
    _signed_gateway()
    tx, order_id = _start_payment()
    obj = _callback(order_id)
    sig = sign_payload(obj, SECRET)

    r = _post(obj, sig)
    assert r.status_code == 200
    assert r.json() == {"received": True}
    first = fetch(Transaction, tx["id"])
    assert first.payment_status == "held"
    assert _intent_status(order_id) == "paid"

    # Provider retries deliver the same callback again
    assert _post(obj, sig.upper()).status_code == 200
    again = fetch(Transaction, tx["id"])
    assert again.payment_status == "held"
    assert again.escrow_hold_until == first.escrow_hold_until


def test_pending_callback_is_acknowledged_only():
    _signed_gateway()
    tx, order_id = _start_payment()
    obj = _callback(order_id, success=False, pending=True)
    assert _post(obj, sign_payload(obj, SECRET)).status_code == 200
    assert _intent_status(order_id) == "pending"
    assert fetch(Transaction, tx["id"]).payment_status == "pending"


def test_failed_callback_marks_intent_failed():
    _signed_gateway()
    tx, order_id = _start_payment(method="vodafone_cash")
    obj = _callback(order_id, success=False)
    assert _post(obj, sign_payload(obj, SECRET)).status_code == 200
    assert _intent_status(order_id) == "failed"
    assert fetch(Transaction, tx["id"]).payment_status == "pending"


def test_amount_mismatch_is_ignored():
    _signed_gateway()
    tx, order_id = _start_payment()
    obj = _callback(order_id, amount_cents=500)
    assert _post(obj, sign_payload(obj, SECRET)).status_code == 200
    assert _intent_status(order_id) == "pending"
    assert fetch(Transaction, tx["id"]).payment_status == "pending"


def test_unknown_order_is_acknowledged():
    _signed_gateway()
    obj = _callback("no-such-order")
    r = _post(obj, sign_payload(obj, SECRET))
    assert r.status_code == 200
    assert r.json() == {"received": True}


def test_provider_refund_moves_intent_only():
    _signed_gateway()
    tx, order_id = _start_payment()
    paid = _callback(order_id)
    _post(paid, sign_payload(paid, SECRET))

    refund = _callback(order_id, is_refunded=True)
    assert _post(refund, sign_payload(refund, SECRET)).status_code == 200
    assert _intent_status(order_id) == "refunded"
    assert fetch(Transaction, tx["id"]).payment_status == "held"


def test_bare_payload_without_envelope_is_accepted():
    _signed_gateway()
    tx, order_id = _start_payment()
    obj = _callback(order_id)
    r = client.post("/payments/webhook", params={"hmac": sign_payload(obj, SECRET)}, json=obj)
    assert r.status_code == 200
    assert fetch(Transaction, tx["id"]).payment_status == "held"


def test_capture_after_decline_on_same_order_holds_funds():
    _signed_gateway()
    tx, order_id = _start_payment()
    declined = _callback(order_id, success=False)
    assert _post(declined, sign_payload(declined, SECRET)).status_code == 200
    assert _intent_status(order_id) == "failed"

    # Buyer retried the card inside the same iframe
    captured = _callback(order_id)
    assert _post(captured, sign_payload(captured, SECRET)).status_code == 200
    assert _intent_status(order_id) == "paid"
    row = fetch(Transaction, tx["id"])
    assert row.payment_status == "held"
    assert row.escrow_hold_until is not None

    # A late copy of the decline does not undo the capture
    assert _post(declined, sign_payload(declined, SECRET)).status_code == 200
    assert _intent_status(order_id) == "paid"


def test_late_capture_supersedes_newer_pending_attempt():
    _signed_gateway()
    buyer = create_user("Buyer")
    tx = open_transaction(client, create_user("Seller"), buyer)
    first = client.patch(f"/transactions/{tx['id']}/payment", headers=buyer.headers, json={"payment_method": "card"})
    first_order = first.json()["provider_order_id"]
    declined = _callback(first_order, success=False)
    _post(declined, sign_payload(declined, SECRET))

    retry = client.patch(f"/transactions/{tx['id']}/payment", headers=buyer.headers, json={"payment_method": "wallet"})
    assert retry.status_code == 200, retry.text
    second_order = retry.json()["provider_order_id"]
    assert second_order != first_order

    captured = _callback(first_order)
    assert _post(captured, sign_payload(captured, SECRET)).status_code == 200
    assert _intent_status(first_order) == "paid"
    assert _intent_status(second_order) == "failed"
    row = fetch(Transaction, tx["id"])
    assert (row.payment_status, row.payment_method) == ("held", "card")

    # The superseded order can no longer take the escrow
    other = _callback(second_order)
    assert _post(other, sign_payload(other, SECRET)).status_code == 200
    assert _intent_status(second_order) == "failed"
    assert fetch(Transaction, tx["id"]).payment_method == "card"
