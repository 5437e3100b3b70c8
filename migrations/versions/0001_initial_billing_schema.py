"""initial billing schema

Revision ID: 0001_initial_billing_schema
Revises:
Create Date: 2026-02-04 05:47:20.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial_billing_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False))
    return cols


def upgrade() -> None:
    op.create_table(
        'plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('slug', sa.String(length=100), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('discount_price', sa.BigInteger(), nullable=True),
        sa.Column('price_yearly', sa.BigInteger(), nullable=True),
        sa.Column('discount_price_yearly', sa.BigInteger(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_popular', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_plans'),
        sa.UniqueConstraint('slug', name='uq_plans_slug'),
    )

    # current_subscription_id FK is added after subscriptions exists.
    op.create_table(
        'households',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('current_subscription_id', sa.Uuid(), nullable=True),
        sa.Column('trial_used', sa.Boolean(), nullable=False),
        sa.Column('trial_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_households'),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('household_id', sa.Uuid(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=True),
        sa.Column('is_billing_owner', sa.Boolean(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['household_id'], ['households.id'],
            name='fk_users_household_id_households', ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_household_id', 'users', ['household_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('household_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('billing_cycle', sa.String(length=20), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['household_id'], ['households.id'],
            name='fk_subscriptions_household_id_households', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['plan_id'], ['plans.id'], name='fk_subscriptions_plan_id_plans'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_subscriptions'),
    )
    op.create_index('ix_subscriptions_household_id', 'subscriptions', ['household_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    with op.batch_alter_table('households') as batch_op:
        batch_op.create_foreign_key(
            'fk_households_current_subscription_id_subscriptions',
            'subscriptions', ['current_subscription_id'], ['id'], ondelete='SET NULL',
        )

    op.create_table(
        'vouchers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('value', sa.BigInteger(), nullable=False),
        sa.Column('max_discount_amount', sa.BigInteger(), nullable=True),
        sa.Column('min_purchase_amount', sa.BigInteger(), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_household', sa.Integer(), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False),
        sa.Column('applicable_plans', sa.JSON(), nullable=True),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('used_count >= 0', name='ck_vouchers_used_count_non_negative'),
        sa.CheckConstraint(
            'max_uses IS NULL OR used_count <= max_uses',
            name='ck_vouchers_used_count_within_max',
        ),
        sa.ForeignKeyConstraint(
            ['created_by'], ['users.id'],
            name='fk_vouchers_created_by_users', ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_vouchers'),
        sa.UniqueConstraint('code', name='uq_vouchers_code'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('household_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('original_amount', sa.BigInteger(), nullable=False),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('tax', sa.BigInteger(), nullable=False),
        sa.Column('total', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_method', sa.String(length=30), nullable=False),
        sa.Column('voucher_id', sa.Uuid(), nullable=True),
        sa.Column('payment_gateway_id', sa.String(length=255), nullable=True),
        sa.Column('payment_token', sa.String(length=255), nullable=True),
        sa.Column('snap_token', sa.String(length=2048), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name='fk_payments_subscription_id_subscriptions', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['household_id'], ['households.id'],
            name='fk_payments_household_id_households', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['user_id'], ['users.id'], name='fk_payments_user_id_users', ondelete='SET NULL'
        ),
        sa.ForeignKeyConstraint(
            ['voucher_id'], ['vouchers.id'],
            name='fk_payments_voucher_id_vouchers', ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_payments'),
    )
    op.create_index('ix_payments_household_id', 'payments', ['household_id'])
    op.create_index('ix_payments_payment_gateway_id', 'payments', ['payment_gateway_id'])
    op.create_index('ix_payments_payment_token', 'payments', ['payment_token'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index(
        'ix_payments_subscription_status', 'payments', ['subscription_id', 'status']
    )

    op.create_table(
        'voucher_usages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('voucher_id', sa.Uuid(), nullable=False),
        sa.Column('household_id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=False),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ['voucher_id'], ['vouchers.id'],
            name='fk_voucher_usages_voucher_id_vouchers', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['household_id'], ['households.id'],
            name='fk_voucher_usages_household_id_households', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['payment_id'], ['payments.id'],
            name='fk_voucher_usages_payment_id_payments', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_voucher_usages'),
        sa.UniqueConstraint('payment_id', name='uq_voucher_usages_payment_id'),
    )
    op.create_index(
        'ix_voucher_usages_voucher_household', 'voucher_usages', ['voucher_id', 'household_id']
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('household_id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('invoice_number', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('tax', sa.BigInteger(), nullable=False),
        sa.Column('total', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('line_items', sa.JSON(), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('due_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ['household_id'], ['households.id'],
            name='fk_invoices_household_id_households', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['payment_id'], ['payments.id'],
            name='fk_invoices_payment_id_payments', ondelete='SET NULL',
        ),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name='fk_invoices_subscription_id_subscriptions', ondelete='SET NULL',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_invoices'),
        sa.UniqueConstraint('invoice_number', name='uq_invoices_invoice_number'),
        sa.UniqueConstraint('payment_id', name='uq_invoices_payment_id'),
    )
    op.create_index('ix_invoices_household_status', 'invoices', ['household_id', 'status'])


def downgrade() -> None:
    op.drop_table('invoices')
    op.drop_table('voucher_usages')
    op.drop_table('payments')
    op.drop_table('vouchers')
    with op.batch_alter_table('households') as batch_op:
        batch_op.drop_constraint(
            'fk_households_current_subscription_id_subscriptions', type_='foreignkey'
        )
    op.drop_table('subscriptions')
    op.drop_table('users')
    op.drop_table('households')
    op.drop_table('plans')
