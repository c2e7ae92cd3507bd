from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


class DevLoginIn(BaseModel):
    phone: str
    name: Optional[str] = None
    referred_by_phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        if not v or not v.startswith("+"):
            raise ValueError("phone must start with + and country code")
        digits = v[1:]
        if not digits.isdigit() or len(digits) < 7:
            raise ValueError("invalid phone format")
        return v


# Offers

class OfferCreateIn(BaseModel):
    listing_id: uuid.UUID
    offered_price_cents: int = Field(gt=0)
    message: Optional[str] = Field(default=None, max_length=500)
    is_exchange_proposal: bool = False
    exchange_listing_id: Optional[uuid.UUID] = None


class CounterIn(BaseModel):
    counter_price_cents: int = Field(gt=0)


class OfferOut(BaseModel):
    id: str
    listing_id: str
    buyer_user_id: str
    offered_price_cents: int
    counter_price_cents: Optional[int] = None
    message: Optional[str] = None
    is_exchange_proposal: bool
    exchange_listing_id: Optional[str] = None
    status: str
    created_at: datetime
    responded_at: Optional[datetime] = None
    expires_at: datetime


class OffersListOut(BaseModel):
    offers: List[OfferOut]


# Transactions

class TransactionOut(BaseModel):
    id: str
    offer_id: Optional[str] = None
    listing_id: str
    buyer_user_id: str
    seller_user_id: str
    agreed_price_cents: int
    platform_fee_cents: int
    seller_receives_cents: int
    currency_code: str
    payment_method: Optional[str] = None
    payment_status: str
    escrow_hold_until: Optional[datetime] = None
    buyer_confirmation: bool
    seller_confirmation: bool
    dispute_status: str
    dispute_reason: Optional[str] = None
    dispute_evidence: List[str] = []
    resolution_notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime


class AcceptOut(BaseModel):
    offer: OfferOut
    transaction: TransactionOut


class TransactionsListOut(BaseModel):
    transactions: List[TransactionOut]


class PaymentIn(BaseModel):
    payment_method: str


class PaymentOut(BaseModel):
    transaction: TransactionOut
    payment_key: Optional[str] = None
    provider_order_id: Optional[str] = None
    iframe_url: Optional[str] = None


class DisputeIn(BaseModel):
    reason: str
    details: Optional[str] = Field(default=None, max_length=2000)
    evidence_urls: List[str] = Field(default_factory=list)

    @field_validator("evidence_urls")
    @classmethod
    def limit_evidence(cls, v: List[str]) -> List[str]:
        if len(v) > 5:
            raise ValueError("at most 5 evidence URLs")
        return v


class ResolveIn(BaseModel):
    resolution: str
    notes: Optional[str] = Field(default=None, max_length=1000)


# Wallet

class WalletOut(BaseModel):
    balance_cents: int
    currency_code: str
    total_earned_cents: int
    total_withdrawn_cents: int
    pending_cents: int = 0


class LedgerEntryOut(BaseModel):
    id: str
    type: str
    amount_cents: int
    balance_after_cents: Optional[int] = None
    description: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    status: str
    created_at: datetime


class LedgerPageOut(BaseModel):
    entries: List[LedgerEntryOut]
    limit: int
    offset: int


class WithdrawIn(BaseModel):
    amount_cents: int = Field(gt=0)
    method: str
    account_details: Dict[str, Any]


class WithdrawalOut(BaseModel):
    id: str
    amount_cents: int
    method: str
    status: str
    created_at: datetime


class WithdrawalsListOut(BaseModel):
    withdrawals: List[WithdrawalOut]


# Admin

class SweepOut(BaseModel):
    expired_offers: int
    expired_listings: int
    released_transactions: List[str]


class ReconcileOut(BaseModel):
    ok: bool
    mismatches: List[Dict[str, Any]]
