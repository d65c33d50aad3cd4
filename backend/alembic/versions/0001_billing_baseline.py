"""Billing baseline: companies, subscriptions, payment_transactions

Revision ID: 0001_billing_baseline
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '0001_billing_baseline'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create billing tables with RLS."""

    op.create_table(
        'companies',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False, unique=True, index=True),
        sa.Column('name', sa.String(255), server_default='', nullable=False),

        # Access
        sa.Column('is_subscribed', sa.Boolean, server_default='false', nullable=False),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True)),

        # Mirrors the governing subscription
        sa.Column('subscription_status', sa.String(20)),
        sa.Column('selected_plan', sa.String(20)),
        sa.Column('subscription_renewal_date', sa.DateTime(timezone=True)),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'company_id', UUID(as_uuid=True),
            sa.ForeignKey('companies.id', ondelete='CASCADE'),
            nullable=False, index=True,
        ),

        # Processor linkage
        sa.Column('payment_provider', sa.String(20), server_default='stripe', nullable=False),
        sa.Column('external_subscription_id', sa.String(255), unique=True, index=True),
        sa.Column('external_plan_id', sa.String(255)),

        # Plan terms
        sa.Column('plan_key', sa.String(20), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), server_default='ARS', nullable=False),

        sa.Column('status', sa.String(20), server_default='pending', nullable=False, index=True),
        sa.Column('subscriber_email', sa.String(255)),
        sa.Column('payment_method_brand', sa.String(50)),
        sa.Column('card_last_four', sa.String(4)),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('next_billing_time', sa.DateTime(timezone=True)),

        # Lifecycle
        sa.Column('activated_at', sa.DateTime(timezone=True)),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('suspended_at', sa.DateTime(timezone=True)),
        sa.Column('failed_payments_count', sa.Integer, server_default='0', nullable=False),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Governing-subscription lookup and the scheduled check
    op.create_index(
        'ix_subscriptions_company_created',
        'subscriptions',
        ['company_id', 'created_at'],
    )
    op.create_index(
        'ix_subscriptions_status_next_billing',
        'subscriptions',
        ['status', 'next_billing_time'],
    )

    op.create_table(
        'payment_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'subscription_id', UUID(as_uuid=True),
            sa.ForeignKey('subscriptions.id', ondelete='SET NULL'),
            index=True,
        ),
        sa.Column(
            'company_id', UUID(as_uuid=True),
            sa.ForeignKey('companies.id', ondelete='CASCADE'),
            nullable=False, index=True,
        ),
        sa.Column('external_transaction_id', sa.String(255), unique=True),
        sa.Column('gross_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('fee_amount', sa.Numeric(12, 2)),
        sa.Column('net_amount', sa.Numeric(12, 2)),
        sa.Column('currency', sa.String(3), server_default='ARS', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    for table in ('companies', 'subscriptions', 'payment_transactions'):
        op.execute(f'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY')

    # Owners read their own billing rows; writes go through the service role
    op.execute("""
        CREATE POLICY "Owners can view own company"
        ON companies FOR SELECT
        TO authenticated
        USING (user_id = auth.uid())
    """)
    op.execute("""
        CREATE POLICY "Owners can view own subscriptions"
        ON subscriptions FOR SELECT
        TO authenticated
        USING (company_id IN (SELECT id FROM companies WHERE user_id = auth.uid()))
    """)
    op.execute("""
        CREATE POLICY "Owners can view own payments"
        ON payment_transactions FOR SELECT
        TO authenticated
        USING (company_id IN (SELECT id FROM companies WHERE user_id = auth.uid()))
    """)
    for table in ('companies', 'subscriptions', 'payment_transactions'):
        op.execute(f"""
            CREATE POLICY "Service role manages {table}"
            ON {table} FOR ALL
            TO service_role
            USING (true)
            WITH CHECK (true)
        """)


def downgrade() -> None:
    """Drop billing tables."""

    op.execute('DROP POLICY IF EXISTS "Owners can view own payments" ON payment_transactions')
    op.execute('DROP POLICY IF EXISTS "Owners can view own subscriptions" ON subscriptions')
    op.execute('DROP POLICY IF EXISTS "Owners can view own company" ON companies')
    for table in ('payment_transactions', 'subscriptions', 'companies'):
        op.execute(f'DROP POLICY IF EXISTS "Service role manages {table}" ON {table}')

    op.drop_table('payment_transactions')
    op.drop_table('subscriptions')
    op.drop_table('companies')
