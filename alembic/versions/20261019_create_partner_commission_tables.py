"""Create partner program and commission ledger tables.

Revision ID: create_partner_commission_tables
Revises:
Create Date: 2026-10-19

Tables:
- tenants
- partner_tiers, partners, partner_relations (closure table)
- partner_commissions (ledger, unique per transaction/beneficiary/level)
- payout_requests
- document_sequences

On PostgreSQL also installs partner_commissions_tenant_check, a trigger
that rejects any ledger row whose beneficiary, source partner or tier
belongs to another tenant.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision: str = 'create_partner_commission_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# ERRCODE P0T01 matches commission_engine.core.tenant_guard.TENANT_VIOLATION_SQLSTATE
TENANT_CHECK_FUNCTION = """
CREATE OR REPLACE FUNCTION check_partner_commission_tenant()
RETURNS TRIGGER AS $$
DECLARE
    owner UUID;
BEGIN
    SELECT tenant_id INTO owner FROM partners WHERE id = NEW.beneficiary_partner_id;
    IF owner IS DISTINCT FROM NEW.tenant_id THEN
        RAISE EXCEPTION 'SECURITY VIOLATION: beneficiary partner % is owned by tenant %, commission tenant is %',
            NEW.beneficiary_partner_id, owner, NEW.tenant_id
            USING ERRCODE = 'P0T01';
    END IF;

    SELECT tenant_id INTO owner FROM partners WHERE id = NEW.source_partner_id;
    IF owner IS DISTINCT FROM NEW.tenant_id THEN
        RAISE EXCEPTION 'SECURITY VIOLATION: source partner % is owned by tenant %, commission tenant is %',
            NEW.source_partner_id, owner, NEW.tenant_id
            USING ERRCODE = 'P0T01';
    END IF;

    SELECT tenant_id INTO owner FROM partner_tiers WHERE id = NEW.beneficiary_tier_id;
    IF owner IS DISTINCT FROM NEW.tenant_id THEN
        RAISE EXCEPTION 'SECURITY VIOLATION: tier % is owned by tenant %, commission tenant is %',
            NEW.beneficiary_tier_id, owner, NEW.tenant_id
            USING ERRCODE = 'P0T01';
    END IF;

    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

TENANT_CHECK_TRIGGER = """
CREATE TRIGGER partner_commissions_tenant_check
BEFORE INSERT OR UPDATE ON partner_commissions
FOR EACH ROW EXECUTE FUNCTION check_partner_commission_tenant();
"""


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing = set(inspector.get_table_names())
    is_postgres = conn.dialect.name == 'postgresql'
    json_type = JSONB() if is_postgres else sa.JSON()

    if 'tenants' not in existing:
        op.create_table(
            'tenants',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('code', sa.String(20), nullable=False, unique=True),
            sa.Column('subdomain', sa.String(100), nullable=False, unique=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
            sa.Column('settings', json_type, nullable=False),
            *_timestamps(),
        )
        print("Created tenants table")

    if 'partner_tiers' not in existing:
        op.create_table(
            'partner_tiers',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('level_code', sa.String(20), nullable=False),
            sa.Column('level_name', sa.String(100), nullable=False),
            sa.Column('description', sa.Text, nullable=True),
            sa.Column('level_order', sa.Integer, nullable=True),
            sa.Column('default_commission_rate', sa.Numeric(5, 4), nullable=False),
            sa.Column('max_referral_depth', sa.Integer, nullable=False, server_default='1'),
            sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'level_code', name='uq_partner_tier_code_per_tenant'),
            sa.UniqueConstraint('tenant_id', 'level_order', name='uq_partner_tier_order_per_tenant'),
            sa.CheckConstraint(
                'default_commission_rate >= 0 AND default_commission_rate <= 1',
                name='ck_partner_tier_rate_range'
            ),
            sa.CheckConstraint('max_referral_depth >= 0', name='ck_partner_tier_depth_non_negative'),
        )
        op.create_index('ix_partner_tiers_tenant_id', 'partner_tiers', ['tenant_id'])
        op.create_index('ix_partner_tiers_tenant_status', 'partner_tiers', ['tenant_id', 'status'])
        print("Created partner_tiers table")

    if 'partners' not in existing:
        op.create_table(
            'partners',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('partner_code', sa.String(50), nullable=False),
            sa.Column('email', sa.String(255), nullable=True),
            sa.Column('first_name', sa.String(100), nullable=True),
            sa.Column('last_name', sa.String(100), nullable=True),
            sa.Column('tier_id', UUID(as_uuid=True), sa.ForeignKey('partner_tiers.id', ondelete='RESTRICT'), nullable=True),
            sa.Column('sponsor_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='SET NULL'), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
            sa.Column('enrollment_date', sa.Date, nullable=False, server_default=sa.func.current_date()),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'partner_code', name='uq_partner_code_per_tenant'),
            sa.CheckConstraint('sponsor_id IS NULL OR sponsor_id != id', name='ck_partner_no_self_sponsorship'),
        )
        op.create_index('ix_partners_tenant_id', 'partners', ['tenant_id'])
        op.create_index('ix_partners_tier_id', 'partners', ['tier_id'])
        op.create_index('ix_partners_sponsor_id', 'partners', ['sponsor_id'])
        op.create_index('ix_partners_tenant_status', 'partners', ['tenant_id', 'status'])
        print("Created partners table")

    if 'partner_relations' not in existing:
        op.create_table(
            'partner_relations',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('parent_partner_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='CASCADE'), nullable=False),
            sa.Column('child_partner_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='CASCADE'), nullable=False),
            sa.Column('depth', sa.Integer, nullable=False),
            sa.Column('path', sa.Text, nullable=False),
            sa.Column('relationship_type', sa.String(20), nullable=False, server_default='SPONSORSHIP'),
            sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
            *_timestamps(),
            sa.UniqueConstraint(
                'tenant_id', 'parent_partner_id', 'child_partner_id', 'relationship_type',
                name='uq_partner_relationship_per_tenant'
            ),
            sa.CheckConstraint('parent_partner_id != child_partner_id', name='ck_partner_relation_no_self'),
            sa.CheckConstraint('depth > 0', name='ck_partner_relation_depth_positive'),
        )
        op.create_index('ix_partner_relations_parent_partner_id', 'partner_relations', ['parent_partner_id'])
        op.create_index('ix_partner_relations_child_partner_id', 'partner_relations', ['child_partner_id'])
        op.create_index('ix_partner_relations_upline', 'partner_relations', ['tenant_id', 'child_partner_id', 'depth'])
        print("Created partner_relations table")

    if 'partner_commissions' not in existing:
        op.create_table(
            'partner_commissions',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('transaction_id', sa.String(255), nullable=False),
            sa.Column('transaction_amount', sa.BigInteger, nullable=False),
            sa.Column('currency', sa.String(3), nullable=False),
            sa.Column('transaction_type', sa.String(20), nullable=False, server_default='PAYMENT'),
            sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
            sa.Column('beneficiary_partner_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('beneficiary_partner_code', sa.String(50), nullable=False),
            sa.Column('beneficiary_tier_id', UUID(as_uuid=True), sa.ForeignKey('partner_tiers.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('beneficiary_tier_name', sa.String(100), nullable=False),
            sa.Column('source_partner_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('source_partner_code', sa.String(50), nullable=False),
            sa.Column('commission_level', sa.Integer, nullable=False),
            sa.Column('levels_from_source', sa.Integer, nullable=False),
            sa.Column('commission_percentage', sa.Numeric(5, 4), nullable=False),
            sa.Column('commission_amount', sa.BigInteger, nullable=False),
            sa.Column('calculation_status', sa.String(20), nullable=False, server_default='CALCULATED'),
            sa.Column('payout_status', sa.String(20), nullable=False, server_default='PENDING'),
            sa.Column('calculation_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('engine_version', sa.String(20), nullable=False),
            sa.Column('notes', sa.Text, nullable=True),
            sa.Column('metadata', json_type, nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint(
                'tenant_id', 'transaction_id', 'beneficiary_partner_id', 'levels_from_source',
                name='uq_commission_per_transaction_beneficiary_level'
            ),
            sa.CheckConstraint(
                'commission_percentage >= 0 AND commission_percentage <= 1',
                name='ck_commission_percentage_range'
            ),
            sa.CheckConstraint('transaction_amount > 0 AND commission_amount >= 0', name='ck_commission_amounts'),
            sa.CheckConstraint(
                'levels_from_source > 0 AND commission_level > 0',
                name='ck_commission_levels_positive'
            ),
        )
        op.create_index('ix_partner_commissions_tenant_transaction', 'partner_commissions', ['tenant_id', 'transaction_id'])
        op.create_index('ix_partner_commissions_tenant_beneficiary', 'partner_commissions', ['tenant_id', 'beneficiary_partner_id'])
        op.create_index('ix_partner_commissions_tenant_payout_status', 'partner_commissions', ['tenant_id', 'payout_status'])
        print("Created partner_commissions table")

        if is_postgres:
            op.execute(TENANT_CHECK_FUNCTION)
            op.execute(TENANT_CHECK_TRIGGER)
            print("Installed partner_commissions_tenant_check trigger")

    if 'payout_requests' not in existing:
        op.create_table(
            'payout_requests',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('partner_id', UUID(as_uuid=True), sa.ForeignKey('partners.id', ondelete='CASCADE'), nullable=False),
            sa.Column('partner_code', sa.String(50), nullable=False),
            sa.Column('request_number', sa.String(50), nullable=False),
            sa.Column('requested_amount', sa.BigInteger, nullable=False),
            sa.Column('payable_balance_at_request', sa.BigInteger, nullable=False),
            sa.Column('currency', sa.String(3), nullable=False),
            sa.Column('request_status', sa.String(20), nullable=False, server_default='PENDING'),
            sa.Column('payment_method', sa.String(30), nullable=False, server_default='BANK_TRANSFER'),
            sa.Column('payment_details', json_type, nullable=False),
            sa.Column('request_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('reviewed_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('reviewed_by', UUID(as_uuid=True), nullable=True),
            sa.Column('approval_notes', sa.Text, nullable=True),
            sa.Column('rejection_reason', sa.Text, nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('tenant_id', 'request_number', name='uq_payout_request_number_per_tenant'),
            sa.CheckConstraint('requested_amount > 0', name='ck_payout_request_amount_positive'),
        )
        op.create_index(
            'ix_payout_requests_tenant_partner_status', 'payout_requests',
            ['tenant_id', 'partner_id', 'request_status']
        )
        print("Created payout_requests table")

    if 'document_sequences' not in existing:
        op.create_table(
            'document_sequences',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('tenant_id', UUID(as_uuid=True), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
            sa.Column('document_type', sa.String(10), nullable=False),
            sa.Column('tenant_code', sa.String(20), nullable=False),
            sa.Column('financial_year', sa.String(10), nullable=False),
            sa.Column('current_number', sa.Integer, nullable=False, server_default='0'),
            sa.Column('padding_length', sa.Integer, nullable=False, server_default='5'),
            sa.Column('separator', sa.String(5), nullable=False, server_default='/'),
            *_timestamps(),
            sa.UniqueConstraint(
                'tenant_id', 'document_type', 'financial_year',
                name='uq_document_sequence_tenant_type_fy'
            ),
        )
        op.create_index('ix_document_sequences_tenant_id', 'document_sequences', ['tenant_id'])
        print("Created document_sequences table")


def downgrade() -> None:
    conn = op.get_bind()
    if conn.dialect.name == 'postgresql':
        op.execute("DROP TRIGGER IF EXISTS partner_commissions_tenant_check ON partner_commissions")
        op.execute("DROP FUNCTION IF EXISTS check_partner_commission_tenant()")

    op.drop_table('document_sequences')
    op.drop_table('payout_requests')
    op.drop_table('partner_commissions')
    op.drop_table('partner_relations')
    op.drop_table('partners')
    op.drop_table('partner_tiers')
    op.drop_table('tenants')
