"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('oauth_provider', sa.String(255), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('credit_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_requests', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('subscription_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credit_balance >= 0', name='ck_accounts_balance_non_negative'),
        sa.CheckConstraint('total_purchased >= 0', name='ck_accounts_total_purchased_non_negative'),
        sa.CheckConstraint('total_requests >= 0', name='ck_accounts_total_requests_non_negative'),
        sa.UniqueConstraint('oauth_provider', 'external_id', name='uq_accounts_identity'),
    )

    op.create_index('idx_accounts_email', 'accounts', ['email'])

    # ========================================================================
    # Create api_keys table
    # ========================================================================
    op.create_table(
        'api_keys',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('secret_hash', sa.Text(), nullable=False),
        sa.Column('lookup_prefix', sa.String(32), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_requests', sa.BigInteger(), nullable=False, server_default='0'),

        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_api_keys_account', ondelete='CASCADE'),
    )

    op.create_index('ix_api_keys_account_id', 'api_keys', ['account_id'])
    # Verification only ever looks at active keys sharing a prefix
    op.create_index(
        'idx_api_keys_lookup_prefix_active',
        'api_keys',
        ['lookup_prefix'],
        postgresql_where=sa.text('is_active'),
    )

    # ========================================================================
    # Create credit_transactions table (append-only ledger)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('resulting_balance', sa.BigInteger(), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('delta <> 0', name='ck_credit_transactions_delta_non_zero'),
        sa.CheckConstraint('resulting_balance >= 0', name='ck_credit_transactions_balance_non_negative'),
        sa.CheckConstraint(
            "kind IN ('usage', 'purchase', 'bonus', 'refund')",
            name='ck_credit_transactions_kind',
        ),
        sa.ForeignKeyConstraint(
            ['account_id'], ['accounts.id'], name='fk_credit_transactions_account', ondelete='RESTRICT'
        ),
    )

    op.create_index(
        'idx_credit_transactions_account_created', 'credit_transactions', ['account_id', 'created_at']
    )

    # ========================================================================
    # Create credit_purchases table
    # ========================================================================
    op.create_table(
        'credit_purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('credit_transaction_id', UUID(as_uuid=True), nullable=True),
        sa.Column('external_transaction_id', sa.String(255), nullable=False),
        sa.Column('payment_reference', sa.String(255), nullable=True),
        sa.Column('package', sa.String(50), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('credits_granted', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),

        # The unique index is the only idempotency guard for payment events
        sa.UniqueConstraint('external_transaction_id', name='uq_credit_purchases_external_transaction_id'),
        sa.CheckConstraint('credits_granted > 0', name='ck_credit_purchases_credits_positive'),
        sa.CheckConstraint('amount_minor >= 0', name='ck_credit_purchases_amount_non_negative'),
        sa.CheckConstraint("status IN ('pending', 'completed')", name='ck_credit_purchases_status'),
        sa.CheckConstraint(
            "status <> 'completed' OR credit_transaction_id IS NOT NULL",
            name='ck_credit_purchases_completed_has_transaction',
        ),
        sa.ForeignKeyConstraint(
            ['account_id'], ['accounts.id'], name='fk_credit_purchases_account', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['credit_transaction_id'],
            ['credit_transactions.id'],
            name='fk_credit_purchases_transaction',
            ondelete='RESTRICT',
        ),
    )

    op.create_index('ix_credit_purchases_account_id', 'credit_purchases', ['account_id'])

    # ========================================================================
    # Create api_request_logs table (write-behind usage log)
    # ========================================================================
    op.create_table(
        'api_request_logs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('api_key_id', UUID(as_uuid=True), nullable=True),
        sa.Column('endpoint', sa.String(255), nullable=False),
        sa.Column('platform', sa.String(50), nullable=True),
        sa.Column('operation', sa.String(50), nullable=True),
        sa.Column('request_id', sa.String(100), nullable=True),
        sa.Column('outcome', sa.String(50), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('latency_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('credits_charged >= 0', name='ck_api_request_logs_credits_non_negative'),
        sa.ForeignKeyConstraint(
            ['account_id'], ['accounts.id'], name='fk_api_request_logs_account', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['api_key_id'], ['api_keys.id'], name='fk_api_request_logs_api_key', ondelete='SET NULL'
        ),
    )

    op.create_index(
        'idx_api_request_logs_account_created', 'api_request_logs', ['account_id', 'created_at']
    )
    op.create_index(
        'idx_api_request_logs_key_created', 'api_request_logs', ['api_key_id', 'created_at']
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('api_request_logs')
    op.drop_table('credit_purchases')
    op.drop_table('credit_transactions')
    op.drop_table('api_keys')
    op.drop_table('accounts')
