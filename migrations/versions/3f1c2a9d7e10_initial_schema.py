"""initial_schema

Revision ID: 3f1c2a9d7e10
Revises:
Create Date: 2026-10-17 09:12:40.118204+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. licenses + monthly usage
    op.create_table('licenses',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('license_key', sa.String(length=100), nullable=False),
    sa.Column('plan_type', sa.String(length=20), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('max_vouchers_per_month', sa.Integer(), nullable=True),
    sa.Column('sms_credits', sa.Integer(), nullable=True),
    sa.Column('expiry_date', sa.DateTime(), nullable=False),
    sa.Column('hardware_id', sa.String(length=255), nullable=True),
    sa.Column('ip_whitelist', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('last_verified', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint("status IN ('pending', 'active', 'suspended', 'expired', 'revoked')", name='chk_license_status'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id'),
    sa.UniqueConstraint('license_key')
    )
    op.create_table('license_usage',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('license_id', sa.UUID(), nullable=False),
    sa.Column('month', sa.String(length=7), nullable=False),
    sa.Column('vouchers_count', sa.Integer(), nullable=False),
    sa.Column('sms_sent', sa.Integer(), nullable=False),
    sa.Column('last_activity', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['license_id'], ['licenses.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('license_id', 'month', name='uq_license_usage_month')
    )

    # 2. signing secrets
    op.create_table('tenant_signing_secrets',
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('encrypted_secret', sa.Text(), nullable=False),
    sa.Column('key_version', sa.String(length=20), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('rotated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('tenant_id')
    )

    # 3. vouchers + numbering
    op.create_table('vouchers',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('voucher_number', sa.String(length=50), nullable=False),
    sa.Column('financial_year', sa.String(length=10), nullable=False),
    sa.Column('company_id', sa.UUID(), nullable=False),
    sa.Column('payee_id', sa.UUID(), nullable=False),
    sa.Column('payee_name', sa.String(length=255), nullable=True),
    sa.Column('payee_mobile', sa.String(length=20), nullable=True),
    sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('payment_mode', sa.String(length=20), nullable=False),
    sa.Column('head_of_account', sa.String(length=255), nullable=True),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('remarks', sa.Text(), nullable=True),
    sa.Column('digital_signature', sa.String(length=64), nullable=True),
    sa.Column('signature_timestamp', sa.DateTime(), nullable=True),
    sa.Column('signature_verified', sa.Boolean(), nullable=True),
    sa.Column('last_verification_at', sa.DateTime(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('created_by', sa.UUID(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('approved_by', sa.UUID(), nullable=True),
    sa.Column('approved_at', sa.DateTime(), nullable=True),
    sa.Column('rejected_by', sa.UUID(), nullable=True),
    sa.Column('rejected_at', sa.DateTime(), nullable=True),
    sa.Column('rejection_reason', sa.Text(), nullable=True),
    sa.Column('cancelled_by', sa.UUID(), nullable=True),
    sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    sa.Column('cancellation_reason', sa.Text(), nullable=True),
    sa.Column('completed_by', sa.UUID(), nullable=True),
    sa.Column('completed_at', sa.DateTime(), nullable=True),
    sa.Column('otp_session_id', sa.String(length=100), nullable=True),
    sa.Column('otp_sent_at', sa.DateTime(), nullable=True),
    sa.Column('payee_otp_verified', sa.Boolean(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.CheckConstraint('amount > 0', name='chk_voucher_amount_positive'),
    sa.CheckConstraint("payment_mode IN ('cash', 'bank_transfer', 'mobile_pay', 'cheque')", name='chk_voucher_payment_mode'),
    sa.CheckConstraint("status IN ('draft', 'pending_approval', 'approved', 'completed', 'rejected', 'cancelled')", name='chk_voucher_status'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'voucher_number', name='uq_voucher_tenant_number')
    )
    op.create_index('idx_vouchers_tenant_status', 'vouchers', ['tenant_id', 'status'], unique=False)
    op.create_index('idx_vouchers_company', 'vouchers', ['company_id'], unique=False)
    op.create_index('idx_vouchers_created', 'vouchers', ['tenant_id', 'created_at'], unique=False)

    op.create_table('voucher_sequences',
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('financial_year', sa.String(length=10), nullable=False),
    sa.Column('last_value', sa.Integer(), nullable=False),
    sa.PrimaryKeyConstraint('tenant_id', 'financial_year')
    )

    # 4. verification log
    op.create_table('signature_verifications',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('voucher_id', sa.UUID(), nullable=False),
    sa.Column('verified_by', sa.UUID(), nullable=True),
    sa.Column('verification_result', sa.String(length=10), nullable=False),
    sa.Column('signature_checked', sa.String(length=64), nullable=True),
    sa.Column('request_source', sa.String(length=20), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.Column('user_agent', sa.Text(), nullable=True),
    sa.Column('verified_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint("verification_result IN ('VALID', 'INVALID')", name='chk_signature_verification_result'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_sigver_voucher', 'signature_verifications', ['voucher_id', 'verified_at'], unique=False)
    op.create_index('idx_sigver_tenant', 'signature_verifications', ['tenant_id', 'verified_at'], unique=False)

    # 5. audit trail + security events (no FK to vouchers)
    op.create_table('voucher_audit_log',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('voucher_id', sa.UUID(), nullable=False),
    sa.Column('action', sa.String(length=50), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('actor_name', sa.String(length=255), nullable=True),
    sa.Column('actor_role', sa.String(length=50), nullable=True),
    sa.Column('before_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('after_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('changed_fields', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.Column('user_agent', sa.Text(), nullable=True),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_voucher_audit_voucher', 'voucher_audit_log', ['voucher_id', 'created_at'], unique=False)
    op.create_index('idx_voucher_audit_tenant', 'voucher_audit_log', ['tenant_id', sa.text('created_at DESC')], unique=False)
    op.create_index('idx_voucher_audit_actor', 'voucher_audit_log', ['actor_id'], unique=False)

    op.create_table('security_events',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('voucher_id', sa.UUID(), nullable=True),
    sa.Column('event_type', sa.String(length=50), nullable=False),
    sa.Column('severity', sa.String(length=20), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('actor_name', sa.String(length=255), nullable=True),
    sa.Column('actor_role', sa.String(length=50), nullable=True),
    sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.Column('user_agent', sa.Text(), nullable=True),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_security_events_tenant', 'security_events', ['tenant_id', sa.text('created_at DESC')], unique=False)
    op.create_index('idx_security_events_voucher', 'security_events', ['voucher_id'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_security_events_voucher', table_name='security_events')
    op.drop_index('idx_security_events_tenant', table_name='security_events')
    op.drop_table('security_events')
    op.drop_index('idx_voucher_audit_actor', table_name='voucher_audit_log')
    op.drop_index('idx_voucher_audit_tenant', table_name='voucher_audit_log')
    op.drop_index('idx_voucher_audit_voucher', table_name='voucher_audit_log')
    op.drop_table('voucher_audit_log')
    op.drop_index('idx_sigver_tenant', table_name='signature_verifications')
    op.drop_index('idx_sigver_voucher', table_name='signature_verifications')
    op.drop_table('signature_verifications')
    op.drop_table('voucher_sequences')
    op.drop_index('idx_vouchers_created', table_name='vouchers')
    op.drop_index('idx_vouchers_company', table_name='vouchers')
    op.drop_index('idx_vouchers_tenant_status', table_name='vouchers')
    op.drop_table('vouchers')
    op.drop_table('tenant_signing_secrets')
    op.drop_table('license_usage')
    op.drop_table('licenses')
