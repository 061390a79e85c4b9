"""Bridge Tables

Revision ID: 0001_bridge_tables
Revises:
Create Date: 2026-10-16

Creates tables owned by the WhatsApp CRM bridge:
- bridge_tenants: CRM locations and their OAuth credentials
- bridge_instances: Evolution API instances, one tenant each
- bridge_correlations: gateway message id -> CRM message id
"""

from alembic import op
import sqlalchemy as sa

revision = '0001_bridge_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # =========================================================================
    # BRIDGE TENANTS
    # =========================================================================

    op.create_table(
        'bridge_tenants',
        sa.Column('id', sa.String(100), nullable=False),
        sa.Column('company_id', sa.String(100), nullable=True),
        sa.Column('user_type', sa.String(20), server_default='Location', nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # =========================================================================
    # BRIDGE INSTANCES
    # =========================================================================

    op.create_table(
        'bridge_instances',
        sa.Column('id', sa.String(100), nullable=False),
        sa.Column('tenant_id', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('api_url', sa.String(255), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('state', sa.String(20), server_default='connecting', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['bridge_tenants.id'], ondelete='CASCADE')
    )
    op.create_index('ix_bridge_instances_tenant_id', 'bridge_instances', ['tenant_id'])
    op.create_index('idx_bridge_instances_tenant_created', 'bridge_instances', ['tenant_id', 'created_at'])

    # =========================================================================
    # BRIDGE CORRELATIONS
    # =========================================================================

    op.create_table(
        'bridge_correlations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('gateway_message_id', sa.String(100), nullable=False),
        sa.Column('crm_message_id', sa.String(191), nullable=False),
        sa.Column('instance_id', sa.String(100), nullable=False),
        sa.Column('contact_phone', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['bridge_instances.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('gateway_message_id', name='uq_bridge_correlations_gateway_message_id')
    )
    op.create_index('idx_bridge_correlations_crm_message_id', 'bridge_correlations', ['crm_message_id'])
    op.create_index('idx_bridge_correlations_instance_id', 'bridge_correlations', ['instance_id'])
    op.create_index('idx_bridge_correlations_created_at', 'bridge_correlations', ['created_at'])


def downgrade():
    op.drop_table('bridge_correlations')
    op.drop_table('bridge_instances')
    op.drop_table('bridge_tenants')
