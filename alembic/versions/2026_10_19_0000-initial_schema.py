"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


idempotency_operation = ENUM(
    'purchase_credits', 'charge_contact_fee', 'confirm_payment',
    name='idempotency_operation', create_type=False,
)
idempotency_status = ENUM(
    'pending', 'processing', 'completed', 'failed',
    name='idempotency_status', create_type=False,
)
credit_transaction_type = ENUM(
    'purchase', 'charge', 'refund', 'adjustment',
    name='credit_transaction_type', create_type=False,
)
subscription_status = ENUM(
    'trialing', 'active', 'past_due', 'paused', 'canceled', 'expired',
    name='subscription_status', create_type=False,
)
placement_fee_status = ENUM(
    'escrow', 'released', 'credited',
    name='placement_fee_status', create_type=False,
)

ENUMS = (
    idempotency_operation,
    idempotency_status,
    credit_transaction_type,
    subscription_status,
    placement_fee_status,
)


def _id_column() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create the payments ledger schema."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    # ========================================================================
    # Idempotency ledger
    # ========================================================================
    op.create_table(
        'idempotency_records',
        _id_column(),
        sa.Column('key', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('operation', idempotency_operation, nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', idempotency_status, nullable=False, server_default='pending'),
        sa.Column('result', JSONB(), nullable=True),
        sa.Column('external_payment_ref', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.UniqueConstraint('key', name='uq_idempotency_records_key'),
    )
    op.create_index('idx_idempotency_records_user_created', 'idempotency_records', ['user_id', 'created_at'])
    op.create_index('idx_idempotency_records_created_at', 'idempotency_records', ['created_at'])
    op.create_index(
        'idx_idempotency_records_payment_ref', 'idempotency_records', ['external_payment_ref'],
        postgresql_where=sa.text('external_payment_ref IS NOT NULL'),
    )

    # ========================================================================
    # Credit balances and transactions
    # ========================================================================
    op.create_table(
        'credit_accounts',
        _id_column(),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
        sa.CheckConstraint('total_purchased >= 0', name='ck_credit_accounts_total_purchased_non_negative'),
        sa.UniqueConstraint('user_id', name='uq_credit_accounts_user_id'),
    )

    op.create_table(
        'credit_transactions',
        _id_column(),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('transaction_type', credit_transaction_type, nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('external_payment_ref', sa.String(255), nullable=True),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        _timestamp('created_at'),
        sa.CheckConstraint('amount <> 0', name='ck_credit_transactions_amount_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transactions_balance_after'),
    )
    op.create_index('idx_credit_transactions_user_created', 'credit_transactions', ['user_id', 'created_at'])
    op.create_index(
        'uq_credit_transactions_payment_ref_type', 'credit_transactions',
        ['external_payment_ref', 'transaction_type'], unique=True,
        postgresql_where=sa.text('external_payment_ref IS NOT NULL'),
    )

    # ========================================================================
    # Subscriptions, payments and provider customers
    # ========================================================================
    op.create_table(
        'subscriptions',
        _id_column(),
        sa.Column('external_subscription_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=True),
        sa.Column('plan_type', sa.String(50), nullable=True),
        sa.Column('user_type', sa.String(50), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('billing_period', sa.String(20), nullable=False, server_default='month'),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint('amount >= 0', name='ck_subscriptions_amount_non_negative'),
        sa.UniqueConstraint('external_subscription_id', name='uq_subscriptions_external_subscription_id'),
    )
    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])

    op.create_table(
        'payments',
        _id_column(),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('external_payment_ref', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('external_payment_ref', name='uq_payments_external_payment_ref'),
    )
    op.create_index('idx_payments_user_created', 'payments', ['user_id', 'created_at'])

    op.create_table(
        'provider_customers',
        _id_column(),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('external_customer_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('user_id', name='uq_provider_customers_user_id'),
        sa.UniqueConstraint('external_customer_id', name='uq_provider_customers_external_customer_id'),
    )

    # ========================================================================
    # Fees
    # ========================================================================
    op.create_table(
        'contact_fees',
        _id_column(),
        sa.Column('payer_id', sa.String(255), nullable=False),
        sa.Column('subject_id', sa.String(255), nullable=False),
        sa.Column('credits_charged', sa.BigInteger(), nullable=False),
        sa.Column('message_hash', sa.String(64), nullable=True),
        _timestamp('created_at'),
        sa.CheckConstraint('credits_charged > 0', name='ck_contact_fees_credits_positive'),
        sa.UniqueConstraint('payer_id', 'subject_id', name='uq_contact_fees_payer_subject'),
    )

    op.create_table(
        'placement_fees',
        _id_column(),
        sa.Column('payer_id', sa.String(255), nullable=False),
        sa.Column('subject_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('fee_status', placement_fee_status, nullable=False, server_default='escrow'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),
        sa.CheckConstraint('amount > 0', name='ck_placement_fees_amount_positive'),
        sa.UniqueConstraint('payer_id', 'subject_id', name='uq_placement_fees_payer_subject'),
    )
    op.create_index('idx_placement_fees_status', 'placement_fees', ['fee_status'])


def downgrade() -> None:
    """Drop the payments ledger schema."""
    op.drop_table('placement_fees')
    op.drop_table('contact_fees')
    op.drop_table('provider_customers')
    op.drop_table('payments')
    op.drop_table('subscriptions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_accounts')
    op.drop_table('idempotency_records')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
