"""initial escrow schema

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_01'
down_revision = None
branch_labels = None
depends_on = None


LIVE_OFFER = sa.text("status IN ('pending', 'countered')")
LIVE_TRANSACTION = sa.text("payment_status IN ('pending', 'held', 'disputed')")
LIVE_INTENT = sa.text("status IN ('pending', 'paid')")


def _id():
    return sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True)


def upgrade() -> None:
    op.create_table(
        'users',
        _id(),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('referred_by_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_phone', 'users', ['phone'], unique=True)

    op.create_table(
        'listings',
        _id(),
        sa.Column('seller_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('offer_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_listings_seller_user_id', 'listings', ['seller_user_id'])
    op.create_index('ix_listings_status_expires', 'listings', ['status', 'expires_at'])

    op.create_table(
        'offers',
        _id(),
        sa.Column('listing_id', sa.Uuid(as_uuid=True), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('buyer_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('offered_price_cents', sa.Integer(), nullable=False),
        sa.Column('counter_price_cents', sa.Integer(), nullable=True),
        sa.Column('message', sa.String(length=500), nullable=True),
        sa.Column('is_exchange_proposal', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('exchange_listing_id', sa.Uuid(as_uuid=True), sa.ForeignKey('listings.id'), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('responded_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('offered_price_cents > 0', name='ck_offers_price_positive'),
    )
    op.create_index('ix_offers_buyer_user_id', 'offers', ['buyer_user_id'])
    op.create_index('ix_offers_listing_status', 'offers', ['listing_id', 'status'])
    op.create_index('ix_offers_status_expires', 'offers', ['status', 'expires_at'])
    op.create_index(
        'uq_offers_live_listing_buyer', 'offers', ['listing_id', 'buyer_user_id'],
        unique=True, postgresql_where=LIVE_OFFER, sqlite_where=LIVE_OFFER,
    )

    op.create_table(
        'transactions',
        _id(),
        sa.Column('offer_id', sa.Uuid(as_uuid=True), sa.ForeignKey('offers.id'), nullable=True),
        sa.Column('listing_id', sa.Uuid(as_uuid=True), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('buyer_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('agreed_price_cents', sa.Integer(), nullable=False),
        sa.Column('platform_fee_cents', sa.Integer(), nullable=False),
        sa.Column('seller_receives_cents', sa.Integer(), nullable=False),
        sa.Column('currency_code', sa.String(length=8), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=True),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('escrow_hold_until', sa.DateTime(), nullable=True),
        sa.Column('buyer_confirmation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('seller_confirmation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dispute_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('dispute_reason', sa.String(length=2100), nullable=True),
        sa.Column('dispute_evidence', sa.JSON(), nullable=True),
        sa.Column('dispute_opened_by_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('dispute_resolved_by_user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('resolution_notes', sa.String(length=1000), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('agreed_price_cents > 0', name='ck_transactions_price_positive'),
    )
    op.create_index('ix_transactions_buyer_created', 'transactions', ['buyer_user_id', 'created_at'])
    op.create_index('ix_transactions_seller_created', 'transactions', ['seller_user_id', 'created_at'])
    op.create_index('ix_transactions_status_hold', 'transactions', ['payment_status', 'escrow_hold_until'])
    op.create_index(
        'uq_transactions_live_listing', 'transactions', ['listing_id'],
        unique=True, postgresql_where=LIVE_TRANSACTION, sqlite_where=LIVE_TRANSACTION,
    )

    op.create_table(
        'payment_intents',
        _id(),
        sa.Column('transaction_id', sa.Uuid(as_uuid=True), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('provider_order_id', sa.String(length=100), nullable=False),
        sa.Column('provider_payment_key', sa.String(length=1024), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('webhook_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider_order_id', name='uq_payment_intents_order'),
    )
    op.create_index('ix_payment_intents_tx', 'payment_intents', ['transaction_id'])
    op.create_index(
        'uq_payment_intents_live_tx', 'payment_intents', ['transaction_id'],
        unique=True, postgresql_where=LIVE_INTENT, sqlite_where=LIVE_INTENT,
    )

    op.create_table(
        'wallets',
        _id(),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency_code', sa.String(length=8), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('balance_cents >= 0', name='ck_wallets_balance_non_negative'),
    )

    op.create_table(
        'wallet_ledger_entries',
        _id(),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('balance_after_cents', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=512), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('reference_type', sa.String(length=20), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount_cents > 0', name='ck_ledger_amount_positive'),
        sa.UniqueConstraint('user_id', 'type', 'reference_type', 'reference_id', name='uq_ledger_reference'),
    )
    op.create_index('ix_ledger_user_created', 'wallet_ledger_entries', ['user_id', 'created_at'])

    op.create_table(
        'withdrawal_requests',
        _id(),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(length=20), nullable=False),
        sa.Column('account_details', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('admin_notes', sa.String(length=1000), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_withdrawal_user_created', 'withdrawal_requests', ['user_id', 'created_at'])

    op.create_table(
        'audit_events',
        _id(),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Uuid(as_uuid=True), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_type_created', 'audit_events', ['type', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_audit_type_created', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_index('ix_withdrawal_user_created', table_name='withdrawal_requests')
    op.drop_table('withdrawal_requests')
    op.drop_index('ix_ledger_user_created', table_name='wallet_ledger_entries')
    op.drop_table('wallet_ledger_entries')
    op.drop_table('wallets')
    op.drop_index('uq_payment_intents_live_tx', table_name='payment_intents')
    op.drop_index('ix_payment_intents_tx', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_index('uq_transactions_live_listing', table_name='transactions')
    op.drop_index('ix_transactions_status_hold', table_name='transactions')
    op.drop_index('ix_transactions_seller_created', table_name='transactions')
    op.drop_index('ix_transactions_buyer_created', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('uq_offers_live_listing_buyer', table_name='offers')
    op.drop_index('ix_offers_status_expires', table_name='offers')
    op.drop_index('ix_offers_listing_status', table_name='offers')
    op.drop_index('ix_offers_buyer_user_id', table_name='offers')
    op.drop_table('offers')
    op.drop_index('ix_listings_status_expires', table_name='listings')
    op.drop_index('ix_listings_seller_user_id', table_name='listings')
    op.drop_table('listings')
    op.drop_index('ix_users_phone', table_name='users')
    op.drop_table('users')
