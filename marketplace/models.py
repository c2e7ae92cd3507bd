import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    JSON,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid() -> uuid.UUID:
    return uuid.uuid4()


def utcnow() -> datetime:
    # Stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


_LIVE_OFFER = text("status IN ('pending', 'countered')")
_LIVE_TRANSACTION = text("payment_status IN ('pending', 'held', 'disputed')")
_LIVE_INTENT = text("status IN ('pending', 'paid')")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    email = Column(String(255), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    referred_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    wallet = relationship("Wallet", uselist=False, back_populates="user")
    listings = relationship("Listing", back_populates="seller")


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_status_expires", "status", "expires_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    seller_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="active")  # active|reserved|sold|expired|deleted
    offer_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    seller = relationship("User", back_populates="listings")
    offers = relationship("Offer", back_populates="listing", foreign_keys="Offer.listing_id")


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        CheckConstraint("offered_price_cents > 0", name="ck_offers_price_positive"),
        Index("ix_offers_listing_status", "listing_id", "status"),
        Index("ix_offers_status_expires", "status", "expires_at"),
        Index(
            "uq_offers_live_listing_buyer",
            "listing_id",
            "buyer_user_id",
            unique=True,
            postgresql_where=_LIVE_OFFER,
            sqlite_where=_LIVE_OFFER,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    offered_price_cents = Column(Integer, nullable=False)
    counter_price_cents = Column(Integer, nullable=True)
    message = Column(String(500), nullable=True)
    is_exchange_proposal = Column(Boolean, nullable=False, default=False)
    exchange_listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending|countered|accepted|rejected|expired
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    responded_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    listing = relationship("Listing", back_populates="offers", foreign_keys=[listing_id])
    buyer = relationship("User")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("agreed_price_cents > 0", name="ck_transactions_price_positive"),
        Index("ix_transactions_buyer_created", "buyer_user_id", "created_at"),
        Index("ix_transactions_seller_created", "seller_user_id", "created_at"),
        Index("ix_transactions_status_hold", "payment_status", "escrow_hold_until"),
        Index(
            "uq_transactions_live_listing",
            "listing_id",
            unique=True,
            postgresql_where=_LIVE_TRANSACTION,
            sqlite_where=_LIVE_TRANSACTION,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    offer_id = Column(Uuid(as_uuid=True), ForeignKey("offers.id"), nullable=True)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    seller_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    agreed_price_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    seller_receives_cents = Column(Integer, nullable=False)
    currency_code = Column(String(8), nullable=False, default="EGP")
    payment_method = Column(String(20), nullable=True)  # cash|wallet|card|fawry|instapay|vodafone_cash
    payment_status = Column(String(16), nullable=False, default="pending")  # pending|held|released|refunded|disputed
    escrow_hold_until = Column(DateTime, nullable=True)
    buyer_confirmation = Column(Boolean, nullable=False, default=False)
    seller_confirmation = Column(Boolean, nullable=False, default=False)
    dispute_status = Column(String(16), nullable=False, default="none")  # none|opened|under_review|resolved_buyer|resolved_seller
    dispute_reason = Column(String(2100), nullable=True)
    dispute_evidence = Column(JSON, nullable=True)
    dispute_opened_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    dispute_resolved_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    resolution_notes = Column(String(1000), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    offer = relationship("Offer")
    listing = relationship("Listing")
    buyer = relationship("User", foreign_keys=[buyer_user_id])
    seller = relationship("User", foreign_keys=[seller_user_id])
    payment_intents = relationship("PaymentIntent", back_populates="transaction")


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        UniqueConstraint("provider_order_id", name="uq_payment_intents_order"),
        Index("ix_payment_intents_tx", "transaction_id"),
        Index(
            "uq_payment_intents_live_tx",
            "transaction_id",
            unique=True,
            postgresql_where=_LIVE_INTENT,
            sqlite_where=_LIVE_INTENT,
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    transaction_id = Column(Uuid(as_uuid=True), ForeignKey("transactions.id"), nullable=False)
    provider = Column(String(20), nullable=False, default="paymob")
    payment_method = Column(String(20), nullable=False)
    provider_order_id = Column(String(100), nullable=False)
    provider_payment_key = Column(String(1024), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|paid|failed|refunded
    webhook_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="payment_intents")


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance_cents >= 0", name="ck_wallets_balance_non_negative"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    currency_code = Column(String(8), nullable=False, default="EGP")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="wallet")


class WalletLedgerEntry(Base):
    __tablename__ = "wallet_ledger_entries"
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_ledger_amount_positive"),
        UniqueConstraint("user_id", "type", "reference_type", "reference_id", name="uq_ledger_reference"),
        Index("ix_ledger_user_created", "user_id", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(String(20), nullable=False)  # credit|debit|fee|withdrawal|referral_bonus|promo_credit
    amount_cents = Column(Integer, nullable=False)
    balance_after_cents = Column(Integer, nullable=True)
    description = Column(String(512), nullable=True)
    reference_id = Column(String(64), nullable=True)
    reference_type = Column(String(20), nullable=True)  # transaction|platform_fee|withdrawal|referral|promo
    status = Column(String(16), nullable=False, default="completed")  # pending|completed|failed|cancelled
    created_at = Column(DateTime, nullable=False, default=utcnow)


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"
    __table_args__ = (Index("ix_withdrawal_user_created", "user_id", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    method = Column(String(20), nullable=False)  # bank_transfer|vodafone_cash|instapay|fawry
    account_details = Column(JSON, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|processing|completed|rejected
    admin_notes = Column(String(1000), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User")


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_type_created", "type", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    type = Column(String(64), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
