"""Add commission snapshot, delivery tracking and the order event outbox

Revision ID: add_commission_tracking
Revises:
Create Date: 2026-09-14

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = 'add_commission_tracking'
down_revision = None  # Fresh databases are created with init_db() and stamped at head
branch_labels = None
depends_on = None


def upgrade():
    # Accounts that must never be removed by the deletion flow
    op.add_column('users', sa.Column('is_protected', sa.Boolean(), nullable=False, server_default=sa.text('false')))

    # Per-vendor commission rate, copied onto every order at creation
    op.add_column('vendors', sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False, server_default='5.00'))
    op.create_check_constraint(
        'vendors_commission_rate_check', 'vendors', 'commission_rate >= 0 AND commission_rate <= 100'
    )

    op.add_column('drivers', sa.Column('total_deliveries', sa.Integer(), nullable=False, server_default='0'))

    # Commission snapshot on orders
    op.add_column('orders', sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False, server_default='5.00'))
    op.add_column('orders', sa.Column('commission_amount', sa.Numeric(12, 2), nullable=False, server_default='0'))
    op.add_column('orders', sa.Column('vendor_earnings', sa.Numeric(12, 2), nullable=False, server_default='0'))
    op.add_column('orders', sa.Column('platform_revenue', sa.Numeric(12, 2), nullable=False, server_default='0'))
    op.add_column('orders', sa.Column('picked_up_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('orders', sa.Column('cancelled_by', sa.Uuid(), nullable=True))
    op.create_check_constraint(
        'orders_commission_rate_check', 'orders', 'commission_rate >= 0 AND commission_rate <= 100'
    )

    # Backfill earnings for orders created before commission tracking
    op.execute(
        "UPDATE orders SET commission_amount = ROUND(subtotal * commission_rate / 100, 2), "
        "vendor_earnings = subtotal - ROUND(subtotal * commission_rate / 100, 2), "
        "platform_revenue = ROUND(subtotal * commission_rate / 100, 2)"
    )

    op.add_column('order_items', sa.Column('position', sa.SmallInteger(), nullable=False, server_default='0'))

    # Outbox relayed to the notification dispatcher after commit
    op.create_table('order_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=True),
        sa.Column('vendor_id', sa.Uuid(), nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('order_events_status_idx', 'order_events', ['status'])


def downgrade():
    op.drop_index('order_events_status_idx', table_name='order_events')
    op.drop_table('order_events')

    op.drop_column('order_items', 'position')

    op.drop_constraint('orders_commission_rate_check', 'orders', type_='check')
    op.drop_column('orders', 'cancelled_by')
    op.drop_column('orders', 'picked_up_at')
    op.drop_column('orders', 'platform_revenue')
    op.drop_column('orders', 'vendor_earnings')
    op.drop_column('orders', 'commission_amount')
    op.drop_column('orders', 'commission_rate')

    op.drop_column('drivers', 'total_deliveries')

    op.drop_constraint('vendors_commission_rate_check', 'vendors', type_='check')
    op.drop_column('vendors', 'commission_rate')

    op.drop_column('users', 'is_protected')
