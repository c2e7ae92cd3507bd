"""Wallet ledger: append-only entries plus a cached balance per user.

Balance changes are single SQL statements (``balance = balance + :amt`` or a
conditional ``balance >= :amt`` debit), followed by the entry append in the
same transaction, so the cached balance always equals the signed sum of
completed entries.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from prometheus_client import Counter
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import BelowMinimumWithdrawal, InsufficientBalance, ValidationFailed
from ..models import Transaction, User, Wallet, WalletLedgerEntry, WithdrawalRequest, utcnow
from ..utils.audit import record_event


logger = logging.getLogger("marketplace.ledger")

LEDGER_COUNTER = Counter("marketplace_ledger_entries_total", "Ledger entries", ["type"])
LEDGER_CENTS = Counter("marketplace_ledger_cents_total", "Ledger movement (cents)", ["type", "currency"])

ENTRY_SIGNS = {
    "credit": 1,
    "referral_bonus": 1,
    "promo_credit": 1,
    "debit": -1,
    "fee": -1,
    "withdrawal": -1,
}
WITHDRAWAL_METHODS = ("bank_transfer", "vodafone_cash", "instapay", "fawry")


def _signed_amount():
    positive = [k for k, v in ENTRY_SIGNS.items() if v > 0]
    return case(
        (WalletLedgerEntry.type.in_(positive), WalletLedgerEntry.amount_cents),
        else_=-WalletLedgerEntry.amount_cents,
    )


def ensure_wallet(db: Session, user_id: uuid.UUID) -> Wallet:
    wallet = db.query(Wallet).filter(Wallet.user_id == user_id).one_or_none()
    if wallet is not None:
        return wallet
    try:
        with db.begin_nested():
            wallet = Wallet(user_id=user_id, balance_cents=0, currency_code=settings.DEFAULT_CURRENCY)
            db.add(wallet)
    except IntegrityError:
        # Created concurrently
        wallet = db.query(Wallet).filter(Wallet.user_id == user_id).one()
    return wallet


def _append(
    db: Session,
    wallet: Wallet,
    entry_type: str,
    amount_cents: int,
    reference_id: Optional[str],
    reference_type: Optional[str],
    description: Optional[str],
) -> WalletLedgerEntry:
    balance_after = db.execute(
        select(Wallet.balance_cents).where(Wallet.id == wallet.id)
    ).scalar_one()
    db.expire(wallet, ["balance_cents", "updated_at"])
    entry = WalletLedgerEntry(
        user_id=wallet.user_id,
        type=entry_type,
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        description=description,
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_type=reference_type,
        status="completed",
    )
    db.add(entry)
    db.flush()
    try:
        LEDGER_COUNTER.labels(entry_type).inc()
        LEDGER_CENTS.labels(entry_type, wallet.currency_code).inc(amount_cents)
    except Exception:
        pass
    return entry


def credit(
    db: Session,
    user_id: uuid.UUID,
    amount_cents: int,
    *,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
    entry_type: str = "credit",
) -> WalletLedgerEntry:
    if amount_cents <= 0:
        raise ValidationFailed("Amount must be positive")
    if ENTRY_SIGNS.get(entry_type) != 1:
        raise ValueError(f"{entry_type!r} is not a credit entry type")
    wallet = ensure_wallet(db, user_id)
    db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance_cents=Wallet.balance_cents + amount_cents, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    entry = _append(db, wallet, entry_type, amount_cents, reference_id, reference_type, description)
    logger.info("credit user=%s type=%s amount=%s ref=%s:%s", user_id, entry_type, amount_cents, reference_type, reference_id)
    return entry


def debit(
    db: Session,
    user_id: uuid.UUID,
    amount_cents: int,
    *,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    description: Optional[str] = None,
    entry_type: str = "debit",
) -> WalletLedgerEntry:
    if amount_cents <= 0:
        raise ValidationFailed("Amount must be positive")
    if ENTRY_SIGNS.get(entry_type) != -1:
        raise ValueError(f"{entry_type!r} is not a debit entry type")
    wallet = ensure_wallet(db, user_id)
    result = db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id, Wallet.balance_cents >= amount_cents)
        .values(balance_cents=Wallet.balance_cents - amount_cents, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientBalance(details={"requested_cents": amount_cents})
    entry = _append(db, wallet, entry_type, amount_cents, reference_id, reference_type, description)
    logger.info("debit user=%s type=%s amount=%s ref=%s:%s", user_id, entry_type, amount_cents, reference_type, reference_id)
    return entry


def reward_referral(db: Session, referred_user_id: uuid.UUID) -> Optional[WalletLedgerEntry]:
    """Credit the referrer of ``referred_user_id`` once their first purchase completes.

    Returns the new entry, or None when there is nothing to pay (no
    referrer, no completed purchase, or already rewarded).
    """
    if isinstance(referred_user_id, str):
        referred_user_id = uuid.UUID(referred_user_id)
    user = db.get(User, referred_user_id)
    if user is None or user.referred_by_user_id is None:
        return None
    completed = db.query(Transaction.id).filter(
        Transaction.buyer_user_id == referred_user_id,
        Transaction.payment_status == "released",
    ).first()
    if completed is None:
        return None
    referrer_id = user.referred_by_user_id
    already = db.query(WalletLedgerEntry.id).filter(
        WalletLedgerEntry.user_id == referrer_id,
        WalletLedgerEntry.type == "referral_bonus",
        WalletLedgerEntry.reference_type == "referral",
        WalletLedgerEntry.reference_id == str(referred_user_id),
    ).first()
    if already is not None:
        return None
    try:
        with db.begin_nested():
            entry = credit(
                db,
                referrer_id,
                settings.REFERRAL_BONUS_CENTS,
                reference_id=str(referred_user_id),
                reference_type="referral",
                description="Referral bonus",
                entry_type="referral_bonus",
            )
    except IntegrityError:
        logger.info("referral bonus for %s already granted", referred_user_id)
        return None
    record_event(db, "wallet.referral_bonus", referrer_id, {
        "referred_user_id": referred_user_id,
        "amount_cents": settings.REFERRAL_BONUS_CENTS,
    })
    return entry


def request_withdrawal(
    db: Session,
    user: User,
    amount_cents: int,
    method: str,
    account_details: Dict[str, Any],
) -> WithdrawalRequest:
    if method not in WITHDRAWAL_METHODS:
        raise ValidationFailed("Unsupported withdrawal method", details={"method": method})
    if amount_cents < settings.MIN_WITHDRAWAL_CENTS:
        raise BelowMinimumWithdrawal(details={"minimum_cents": settings.MIN_WITHDRAWAL_CENTS})
    wr = WithdrawalRequest(
        user_id=user.id,
        amount_cents=amount_cents,
        method=method,
        account_details=account_details,
        status="pending",
    )
    db.add(wr)
    db.flush()
    debit(
        db,
        user.id,
        amount_cents,
        reference_id=str(wr.id),
        reference_type="withdrawal",
        description=f"Withdrawal via {method}",
        entry_type="withdrawal",
    )
    record_event(db, "wallet.withdrawal_requested", user.id, {
        "withdrawal_id": wr.id,
        "amount_cents": amount_cents,
        "method": method,
    })
    return wr


def balance_of(db: Session, user_id: uuid.UUID) -> int:
    bal = db.execute(select(Wallet.balance_cents).where(Wallet.user_id == user_id)).scalar_one_or_none()
    return int(bal or 0)


def ledger_sum(db: Session, user_id: uuid.UUID) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(_signed_amount()), 0)).where(
            WalletLedgerEntry.user_id == user_id,
            WalletLedgerEntry.status == "completed",
        )
    ).scalar_one()
    return int(total)


def wallet_summary(db: Session, user_id: uuid.UUID) -> Dict[str, Any]:
    wallet = ensure_wallet(db, user_id)
    rows = db.execute(
        select(WalletLedgerEntry.type, func.sum(WalletLedgerEntry.amount_cents))
        .where(WalletLedgerEntry.user_id == user_id, WalletLedgerEntry.status == "completed")
        .group_by(WalletLedgerEntry.type)
    ).all()
    by_type = {t: int(s or 0) for t, s in rows}
    # Sale proceeds still sitting in escrow for this seller
    pending = db.execute(
        select(func.coalesce(func.sum(Transaction.seller_receives_cents), 0)).where(
            Transaction.seller_user_id == user_id,
            Transaction.payment_status.in_(("held", "disputed")),
        )
    ).scalar_one()
    return {
        "balance_cents": balance_of(db, user_id),
        "currency_code": wallet.currency_code,
        "total_earned_cents": sum(v for t, v in by_type.items() if ENTRY_SIGNS.get(t) == 1),
        "total_withdrawn_cents": by_type.get("withdrawal", 0),
        "pending_cents": int(pending),
    }


def list_entries(db: Session, user_id: uuid.UUID, *, limit: int = 20, offset: int = 0) -> List[WalletLedgerEntry]:
    return (
        db.query(WalletLedgerEntry)
        .filter(WalletLedgerEntry.user_id == user_id)
        .order_by(WalletLedgerEntry.created_at.desc(), WalletLedgerEntry.id)
        .limit(limit)
        .offset(offset)
        .all()
    )


def list_withdrawals(db: Session, user_id: uuid.UUID) -> List[WithdrawalRequest]:
    return (
        db.query(WithdrawalRequest)
        .filter(WithdrawalRequest.user_id == user_id)
        .order_by(WithdrawalRequest.created_at.desc())
        .all()
    )


def reconcile(db: Session) -> List[Dict[str, Any]]:
    """Return every wallet whose cached balance differs from its ledger sum."""
    sums = dict(
        db.execute(
            select(WalletLedgerEntry.user_id, func.sum(_signed_amount()))
            .where(WalletLedgerEntry.status == "completed")
            .group_by(WalletLedgerEntry.user_id)
        ).all()
    )
    mismatches = []
    for wallet in db.query(Wallet).all():
        expected = int(sums.get(wallet.user_id) or 0)
        if expected != wallet.balance_cents:
            mismatches.append({
                "user_id": str(wallet.user_id),
                "wallet_id": str(wallet.id),
                "balance_cents": wallet.balance_cents,
                "ledger_cents": expected,
                "diff_cents": expected - wallet.balance_cents,
            })
    if mismatches:
        logger.error("ledger reconciliation found %d mismatched wallets", len(mismatches))
    return mismatches


def fix_balances(db: Session) -> int:
    """Reset cached balances to their ledger sums. Returns how many wallets changed."""
    fixed = 0
    for m in reconcile(db):
        if m["ledger_cents"] < 0:
            logger.error("wallet %s has a negative ledger sum, left untouched", m["wallet_id"])
            continue
        db.execute(
            update(Wallet)
            .where(Wallet.id == uuid.UUID(m["wallet_id"]))
            .values(balance_cents=m["ledger_cents"], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        fixed += 1
    db.expire_all()
    return fixed
