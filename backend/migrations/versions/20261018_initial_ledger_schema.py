"""initial ledger schema

Revision ID: kl0001initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the key issuance and redemption ledger from scratch:
- accounts: prepaid balances with optimistic locking (version_id)
- ledger_transactions: append-only DEBIT/CREDIT log
- keys / key_devices: issued keys and their bound devices
- referral_codes / referral_redemptions: balance top-up codes
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'kl0001initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # accounts
    # ============================================================================
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # ledger_transactions: append-only; balance arithmetic enforced per row
    # ============================================================================
    op.create_table(
        'ledger_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=8), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('reference_type', sa.String(length=16), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_ledger_txn_amount_positive'),
        sa.CheckConstraint(
            "(type = 'DEBIT' AND balance_after = balance_before - amount) OR "
            "(type = 'CREDIT' AND balance_after = balance_before + amount)",
            name='ck_ledger_txn_balance_arithmetic',
        ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ledger_transactions_account_id', 'ledger_transactions', ['account_id'])
    op.create_index('ix_ledger_transactions_type', 'ledger_transactions', ['type'])
    op.create_index('ix_ledger_transactions_reason', 'ledger_transactions', ['reason'])
    op.create_index('ix_ledger_transactions_created_at', 'ledger_transactions', ['created_at'])
    op.create_index('ix_ledger_txn_account_created', 'ledger_transactions', ['account_id', 'created_at'])
    op.create_index('ix_ledger_txn_reference', 'ledger_transactions', ['reference_type', 'reference_id'])

    # ============================================================================
    # keys: device cap enforced by CHECK as well as the conditional claim
    # ============================================================================
    op.create_table(
        'keys',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('tier_id', sa.String(length=32), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('device_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('bound_device_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deactivation_reason', sa.String(length=16), nullable=True),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.CheckConstraint('device_limit >= 1 AND device_limit <= 10', name='ck_keys_device_limit_range'),
        sa.CheckConstraint('bound_device_count <= device_limit', name='ck_keys_device_cap'),
        sa.CheckConstraint('price > 0', name='ck_keys_price_positive'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['transaction_id'], ['ledger_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_keys_code'),
        sa.UniqueConstraint('transaction_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_keys_account_id', 'keys', ['account_id'])
    op.create_index('ix_keys_expires_at', 'keys', ['expires_at'])
    op.create_index('ix_keys_account_active', 'keys', ['account_id', 'is_active'])

    op.create_table(
        'key_devices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.String(length=128), nullable=False),
        sa.Column('first_bound_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['key_id'], ['keys.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key_id', 'device_id', name='uq_key_devices_key_device'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_key_devices_key_id', 'key_devices', ['key_id'])

    # ============================================================================
    # referral_codes / referral_redemptions
    # ============================================================================
    op.create_table(
        'referral_codes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('usage_limit', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('uses_consumed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('amount > 0', name='ck_referral_codes_amount_positive'),
        sa.CheckConstraint('usage_limit >= 1', name='ck_referral_codes_usage_limit'),
        sa.CheckConstraint(
            'uses_consumed >= 0 AND uses_consumed <= usage_limit',
            name='ck_referral_codes_uses_bounded',
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_referral_codes_code'),
        sqlite_autoincrement=True
    )

    # unique_account_id is NULL unless the once-per-account policy applied
    op.create_table(
        'referral_redemptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code_id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('unique_account_id', sa.Integer(), nullable=True),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['code_id'], ['referral_codes.id'], ),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.ForeignKeyConstraint(['transaction_id'], ['ledger_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code_id', 'unique_account_id', name='uq_referral_redemptions_once_per_account'),
        sa.UniqueConstraint('transaction_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_referral_redemptions_code_id', 'referral_redemptions', ['code_id'])
    op.create_index('ix_referral_redemptions_account_id', 'referral_redemptions', ['account_id'])
    op.create_index('ix_referral_redemptions_code_account', 'referral_redemptions', ['code_id', 'account_id'])


def downgrade():
    op.drop_table('referral_redemptions')
    op.drop_table('referral_codes')
    op.drop_table('key_devices')
    op.drop_table('keys')
    op.drop_table('ledger_transactions')
    op.drop_table('accounts')
