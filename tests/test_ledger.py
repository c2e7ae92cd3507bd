import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import update

from marketplace.config import settings
from marketplace.database import SessionLocal, session_scope
from marketplace.errors import InsufficientBalance, ValidationFailed
from marketplace.main import app
from marketplace.models import Transaction, Wallet, WalletLedgerEntry
from marketplace.services import ledger
from .utils import create_user, held_transaction


client = TestClient(app)


def _fund(user, amount_cents):
    with session_scope() as db:
        ledger.credit(db, user.id, amount_cents, reference_type="promo", description="Test funds", entry_type="promo_credit")


def test_credit_and_debit_keep_balance_in_line_with_ledger():
    user = create_user()
    with session_scope() as db:
        first = ledger.credit(db, user.id, 5000, reference_id="a", reference_type="test")
        second = ledger.credit(db, user.id, 2500, reference_id="b", reference_type="test")
        spent = ledger.debit(db, user.id, 1500, reference_id="c", reference_type="test")
        assert (first.balance_after_cents, second.balance_after_cents, spent.balance_after_cents) == (5000, 7500, 6000)
    with SessionLocal() as db:
        assert ledger.balance_of(db, user.id) == 6000
        assert ledger.ledger_sum(db, user.id) == 6000
        assert ledger.reconcile(db) == []


def test_debit_never_goes_negative():
    user = create_user()
    _fund(user, 1000)
    with pytest.raises(InsufficientBalance):
        with session_scope() as db:
            ledger.debit(db, user.id, 1001)
    with SessionLocal() as db:
        assert ledger.balance_of(db, user.id) == 1000
        assert db.query(WalletLedgerEntry).filter(WalletLedgerEntry.user_id == user.id).count() == 1


def test_non_positive_amounts_and_wrong_entry_types_are_refused():
    user = create_user()
    with SessionLocal() as db:
        with pytest.raises(ValidationFailed):
            ledger.credit(db, user.id, 0)
        with pytest.raises(ValueError):
            ledger.credit(db, user.id, 100, entry_type="withdrawal")
        with pytest.raises(ValueError):
            ledger.debit(db, user.id, 100, entry_type="referral_bonus")


def test_referral_bonus_is_paid_once():
    referrer = create_user("Referrer")
    buyer = create_user("Referred", referred_by=referrer)

    for _ in range(2):
        tx = held_transaction(client, create_user("Seller"), buyer)
        r = client.patch(f"/transactions/{tx['id']}/confirm", headers=buyer.headers)
        assert r.status_code == 200, r.text

    with SessionLocal() as db:
        assert ledger.balance_of(db, referrer.id) == settings.REFERRAL_BONUS_CENTS
        bonuses = db.query(WalletLedgerEntry).filter(
            WalletLedgerEntry.user_id == referrer.id,
            WalletLedgerEntry.type == "referral_bonus",
        ).all()
        assert len(bonuses) == 1
        assert bonuses[0].reference_id == str(buyer.id)

    # A direct retry is a no-op as well
    with session_scope() as db:
        assert ledger.reward_referral(db, buyer.id) is None


def test_no_referral_bonus_without_completed_purchase():
    referrer = create_user("Referrer")
    buyer = create_user("Referred", referred_by=referrer)
    held_transaction(client, create_user("Seller"), buyer)
    with session_scope() as db:
        assert ledger.reward_referral(db, buyer.id) is None
        assert ledger.balance_of(db, referrer.id) == 0


def test_withdrawal_request_deducts_balance():
    user = create_user()
    _fund(user, 50000)

    small = client.post(
        "/wallet/withdraw", headers=user.headers,
        json={"amount_cents": settings.MIN_WITHDRAWAL_CENTS - 1, "method": "bank_transfer", "account_details": {"iban": "EG00"}},
    )
    assert small.status_code == 400
    assert small.json()["error"]["code"] == "below_minimum_withdrawal"

    bad_method = client.post(
        "/wallet/withdraw", headers=user.headers,
        json={"amount_cents": 20000, "method": "paypal", "account_details": {}},
    )
    assert bad_method.status_code == 400

    too_much = client.post(
        "/wallet/withdraw", headers=user.headers,
        json={"amount_cents": 60000, "method": "instapay", "account_details": {"handle": "me@instapay"}},
    )
    assert too_much.status_code == 400
    assert too_much.json()["error"]["code"] == "insufficient_balance"

    ok = client.post(
        "/wallet/withdraw", headers=user.headers,
        json={"amount_cents": 20000, "method": "vodafone_cash", "account_details": {"phone": user.phone}},
    )
    assert ok.status_code == 201, ok.text
    assert ok.json()["status"] == "pending"

    wallet = client.get("/wallet", headers=user.headers).json()
    assert wallet["balance_cents"] == 30000
    assert wallet["total_withdrawn_cents"] == 20000
    listed = client.get("/wallet/withdrawals", headers=user.headers).json()["withdrawals"]
    assert [w["id"] for w in listed] == [ok.json()["id"]]
    entries = client.get("/wallet/transactions", headers=user.headers).json()["entries"]
    assert {e["type"] for e in entries} == {"promo_credit", "withdrawal"}


def test_reconcile_reports_and_fixes_drift():
    user = create_user()
    admin = create_user("Admin", is_admin=True)
    _fund(user, 7000)
    with session_scope() as db:
        db.execute(update(Wallet).where(Wallet.user_id == user.id).values(balance_cents=9999))

    assert client.get("/admin/reconcile", headers=user.headers).status_code == 403

    report = client.get("/admin/reconcile", headers=admin.headers).json()
    assert report["ok"] is False
    assert len(report["mismatches"]) == 1
    mismatch = report["mismatches"][0]
    assert mismatch["user_id"] == str(user.id)
    assert (mismatch["balance_cents"], mismatch["ledger_cents"], mismatch["diff_cents"]) == (9999, 7000, -2999)

    fixed = client.post("/admin/reconcile/fix", headers=admin.headers).json()
    assert fixed == {"ok": True, "mismatches": []}
    with SessionLocal() as db:
        assert ledger.balance_of(db, user.id) == 7000


def _credit_once(args):
    user_id, ref = args
    with session_scope() as db:
        ledger.credit(db, user_id, 100, reference_id=ref, reference_type="test")


def test_concurrent_credits_on_one_user_stay_consistent():
    user = create_user()
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(_credit_once, [(user.id, f"c{i}") for i in range(40)]))

    with SessionLocal() as db:
        assert ledger.balance_of(db, user.id) == 4000
        assert ledger.ledger_sum(db, user.id) == 4000
        snapshots = sorted(
            e.balance_after_cents
            for e in db.query(WalletLedgerEntry).filter(WalletLedgerEntry.user_id == user.id)
        )
    assert snapshots == [100 * (i + 1) for i in range(40)]


def _reward(user_id):
    with session_scope() as db:
        return ledger.reward_referral(db, user_id) is not None


def test_concurrent_referral_rewards_pay_exactly_once():
    referrer = create_user("Referrer")
    buyer = create_user("Referred", referred_by=referrer)
    tx = held_transaction(client, create_user("Seller"), buyer)
    with session_scope() as db:
        # Release without the after-commit reward so only the race below pays it
        db.execute(update(Transaction).where(Transaction.id == uuid.UUID(tx["id"])).values(payment_status="released"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        paid = list(pool.map(_reward, [buyer.id] * 8))

    assert paid.count(True) == 1
    with SessionLocal() as db:
        bonuses = db.query(WalletLedgerEntry).filter(
            WalletLedgerEntry.user_id == referrer.id,
            WalletLedgerEntry.type == "referral_bonus",
        ).count()
        assert bonuses == 1
        assert ledger.balance_of(db, referrer.id) == settings.REFERRAL_BONUS_CENTS
        assert ledger.ledger_sum(db, referrer.id) == settings.REFERRAL_BONUS_CENTS
