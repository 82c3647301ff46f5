"""initial claims schema

Revision ID: c1a2b3d4e5f6
Revises:
Create Date: 2026-10-16 00:00:00.000000

Creates the claim subsystem schema:
- users, merchants, merchant_users, session_tokens: principals
- purchases: read-only purchase ledger consumed at issuance
- claims: single-use credentials with compare-and-swap state
- claim_verifications: append-only audit log (also drives PIN throttling)
- fraud_events: incidents raised from the audit log
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c1a2b3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('return_policy_days', sa.Integer(), nullable=False),
        sa.Column('warranty_months', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'merchant_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('merchant_id', 'email', name='uq_merchant_users_merchant_email'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_merchant_users_merchant_id', 'merchant_users', ['merchant_id'])

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('merchant_user_id', sa.Integer(), nullable=True),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.CheckConstraint(
            "(user_id IS NOT NULL AND merchant_user_id IS NULL) OR "
            "(user_id IS NULL AND merchant_user_id IS NOT NULL)",
            name='ck_session_tokens_single_principal'
        ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['merchant_user_id'], ['merchant_users.id']),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_merchant_user_id', 'session_tokens', ['merchant_user_id'])
    op.create_index('ix_session_tokens_merchant_id', 'session_tokens', ['merchant_id'])
    op.create_index('ix_session_tokens_expires_at', 'session_tokens', ['expires_at'])
    op.create_index('ix_session_tokens_is_revoked', 'session_tokens', ['is_revoked'])

    # ============================================================================
    # purchases: ledger rows written upstream, read by claim issuance
    # ============================================================================
    op.create_table(
        'purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('merchant', sa.String(length=255), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('purchase_date', sa.String(length=10), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchases_user_id', 'purchases', ['user_id'])
    op.create_index('ix_purchases_merchant_id', 'purchases', ['merchant_id'])
    op.create_index('ix_purchases_hash', 'purchases', ['hash'])
    op.create_index('ix_purchases_user_date', 'purchases', ['user_id', 'purchase_date'])

    # ============================================================================
    # claims
    # ============================================================================
    op.create_table(
        'claims',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('claim_code', sa.String(length=32), nullable=False),
        sa.Column('pin', sa.String(length=6), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('claim_type', sa.String(length=16), nullable=False),
        sa.Column('original_amount_cents', sa.Integer(), nullable=False),
        sa.Column('redeemed_amount_cents', sa.Integer(), nullable=True),
        sa.Column('merchant_name', sa.String(length=255), nullable=False),
        sa.Column('purchase_date', sa.String(length=10), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('redeemed_by_merchant_id', sa.Integer(), nullable=True),
        sa.Column('redeemed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('qr_code_data', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['redeemed_by_merchant_id'], ['merchants.id']),
        sa.ForeignKeyConstraint(['redeemed_by_user_id'], ['merchant_users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_claims_claim_code', 'claims', ['claim_code'], unique=True)
    op.create_index('ix_claims_purchase_id', 'claims', ['purchase_id'])
    op.create_index('ix_claims_user_id', 'claims', ['user_id'])
    op.create_index('ix_claims_state', 'claims', ['state'])
    op.create_index('ix_claims_expires_at', 'claims', ['expires_at'])
    op.create_index('ix_claims_purchase_type_state', 'claims', ['purchase_id', 'claim_type', 'state'])
    op.create_index('ix_claims_user_created', 'claims', ['user_id', 'created_at'])

    # ============================================================================
    # claim_verifications: append-only audit log
    # ============================================================================
    op.create_table(
        'claim_verifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('claim_id', sa.Integer(), nullable=True),
        sa.Column('claim_code_attempted', sa.String(length=64), nullable=True),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('merchant_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('result', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('attempted_pin', sa.String(length=16), nullable=True),
        sa.Column('pin_correct', sa.Boolean(), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id']),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.ForeignKeyConstraint(['merchant_user_id'], ['merchant_users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_claim_verifications_claim_id', 'claim_verifications', ['claim_id'])
    op.create_index('ix_claim_verifications_merchant_id', 'claim_verifications', ['merchant_id'])
    op.create_index('ix_claim_verifications_created_at', 'claim_verifications', ['created_at'])
    op.create_index('ix_claim_verifications_claim_created', 'claim_verifications', ['claim_id', 'created_at'])
    op.create_index('ix_claim_verifications_claim_pin', 'claim_verifications',
                    ['claim_id', 'pin_correct', 'created_at'])

    # ============================================================================
    # fraud_events
    # ============================================================================
    op.create_table(
        'fraud_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('claim_id', sa.Integer(), nullable=True),
        sa.Column('purchase_id', sa.Integer(), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('metadata', sa.Text(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['claim_id'], ['claims.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
        sa.ForeignKeyConstraint(['resolved_by'], ['merchant_users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_fraud_events_claim_id', 'fraud_events', ['claim_id'])
    op.create_index('ix_fraud_events_merchant_id', 'fraud_events', ['merchant_id'])
    op.create_index('ix_fraud_events_event_type', 'fraud_events', ['event_type'])
    op.create_index('ix_fraud_events_resolved', 'fraud_events', ['resolved'])
    op.create_index('ix_fraud_events_created_at', 'fraud_events', ['created_at'])
    op.create_index('ix_fraud_events_claim_type', 'fraud_events', ['claim_id', 'event_type'])
    op.create_index('ix_fraud_events_resolved_created', 'fraud_events', ['resolved', 'created_at'])


def downgrade():
    op.drop_table('fraud_events')
    op.drop_table('claim_verifications')
    op.drop_table('claims')
    op.drop_table('purchases')
    op.drop_table('session_tokens')
    op.drop_table('merchant_users')
    op.drop_table('merchants')
    op.drop_table('users')
