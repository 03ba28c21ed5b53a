"""
Alembic migration: Initial fulfillment schema.

Creates customers, products, the append-only inventory ledger, orders with
line items and status history, and the per-area route optimizations.
Enum types are created once up front on PostgreSQL because order_status is
shared by several columns.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    'order_status': (
        'pending',
        'confirmed',
        'packing',
        'ready_for_delivery',
        'out_for_delivery',
        'delivered',
        'cancelled',
    ),
    'backorder_status': (
        'none',
        'pending_approval',
        'approved',
        'rejected',
        'partial_approved',
    ),
    'inventory_transaction_type': ('sale', 'return', 'adjustment'),
    'inventory_adjustment_reason': (
        'stock_received',
        'stock_count_correction',
        'damaged_goods',
        'expired_stock',
    ),
}

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def enum_column_type(name: str) -> sa.types.TypeEngine:
    """Portable enum type that never creates the PostgreSQL type itself."""
    values = ENUMS[name]
    return sa.Enum(*values, name=name).with_variant(
        postgresql.ENUM(*values, name=name, create_type=False), 'postgresql'
    )


def timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Upgrade database schema to the initial fulfillment model.
    """
    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        'customers',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False, comment='Business name'),
        sa.Column(
            'credit_limit',
            sa.BigInteger(),
            nullable=True,
            comment='Credit limit in cents; NULL means unlimited',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *timestamp_columns(),
        sa.CheckConstraint(
            'credit_limit IS NULL OR credit_limit >= 0',
            name='ck_customers_credit_limit_non_negative',
        ),
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('sku', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('unit_of_measure', sa.String(32), nullable=False, server_default='each'),
        sa.Column('unit_price', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column(
            'current_stock',
            sa.Integer(),
            nullable=False,
            server_default='0',
            comment='Units on hand; equals the sum of ledger deltas',
        ),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=False, server_default='0'),
        *timestamp_columns(),
        sa.CheckConstraint('current_stock >= 0', name='ck_products_current_stock_non_negative'),
        sa.CheckConstraint('unit_price >= 0', name='ck_products_unit_price_non_negative'),
        sa.CheckConstraint(
            'low_stock_threshold >= 0',
            name='ck_products_low_stock_threshold_non_negative',
        ),
    )

    op.create_table(
        'route_optimizations',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('delivery_date', sa.Date(), nullable=False),
        sa.Column('area_tag', sa.String(16), nullable=False),
        sa.Column('waypoints', JSON_TYPE, nullable=False),
        sa.Column('order_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_distance', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_duration', sa.Float(), nullable=False, server_default='0'),
        sa.Column('route_geometry', sa.Text(), nullable=True),
        sa.Column(
            'needs_reoptimization',
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column('optimized_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('optimized_by', sa.String(255), nullable=True),
        *timestamp_columns(),
        sa.UniqueConstraint(
            'delivery_date', 'area_tag', name='uq_route_optimizations_date_area'
        ),
        sa.CheckConstraint('order_count >= 0', name='ck_route_optimizations_order_count'),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True),
        sa.Column(
            'customer_id',
            sa.Uuid(),
            sa.ForeignKey('customers.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('status', enum_column_type('order_status'), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('backorder_status', enum_column_type('backorder_status'), nullable=False),
        sa.Column('stock_shortfall', JSON_TYPE, nullable=True),
        sa.Column('approved_quantities', JSON_TYPE, nullable=True),
        sa.Column('subtotal', sa.BigInteger(), nullable=False),
        sa.Column('tax_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('delivery_address', JSON_TYPE, nullable=False),
        sa.Column('area_tag', sa.String(16), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('delivery_date', sa.Date(), nullable=False),
        sa.Column('notes', sa.String(1000), nullable=True),
        sa.Column('packing_sequence', sa.Integer(), nullable=True),
        sa.Column('packed_skus', JSON_TYPE, nullable=False),
        sa.Column('packing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_packing_activity_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('packed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('packed_by', sa.String(255), nullable=True),
        sa.Column('packing_notes', sa.String(1000), nullable=True),
        sa.Column('delivery_sequence', sa.Integer(), nullable=True),
        sa.Column(
            'route_id',
            sa.Uuid(),
            sa.ForeignKey('route_optimizations.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('estimated_arrival', sa.DateTime(timezone=True), nullable=True),
        sa.Column('driver_id', sa.String(255), nullable=True),
        sa.Column('driver_assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_arrival', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('proof_of_delivery', sa.String(1000), nullable=True),
        sa.Column('return_reason', sa.String(1000), nullable=True),
        sa.Column(
            'manager_approved_cancellation',
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column('cancellation_reason', sa.String(1000), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('updated_by', sa.String(255), nullable=True),
        *timestamp_columns(),
        sa.CheckConstraint('subtotal >= 0', name='ck_orders_subtotal_non_negative'),
        sa.CheckConstraint('tax_amount >= 0', name='ck_orders_tax_amount_non_negative'),
        sa.CheckConstraint(
            'total_amount = subtotal + tax_amount', name='ck_orders_total_consistent'
        ),
        sa.CheckConstraint('version >= 1', name='ck_orders_version_positive'),
        sa.CheckConstraint(
            "area_tag IS NULL OR area_tag IN ('north', 'east', 'south', 'west')",
            name='ck_orders_area_tag_valid',
        ),
    )
    op.create_index('ix_orders_customer_status', 'orders', ['customer_id', 'status'])
    op.create_index('ix_orders_delivery_date_status', 'orders', ['delivery_date', 'status'])
    op.create_index(
        'ix_orders_status_packing_activity',
        'orders',
        ['status', 'last_packing_activity_at'],
    )

    op.create_table(
        'order_line_items',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column(
            'product_id',
            sa.Uuid(),
            sa.ForeignKey('products.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('sku', sa.String(64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.BigInteger(), nullable=False),
        sa.Column('subtotal', sa.BigInteger(), nullable=False),
        sa.Column('stock_deducted', sa.Boolean(), nullable=False, server_default=sa.false()),
        *timestamp_columns(),
        sa.CheckConstraint('quantity > 0', name='ck_order_line_items_quantity_positive'),
        sa.CheckConstraint(
            'unit_price >= 0', name='ck_order_line_items_unit_price_non_negative'
        ),
        sa.CheckConstraint(
            'subtotal = quantity * unit_price',
            name='ck_order_line_items_subtotal_consistent',
        ),
    )
    op.create_index('ix_order_line_items_order', 'order_line_items', ['order_id'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('from_status', enum_column_type('order_status'), nullable=True),
        sa.Column('to_status', enum_column_type('order_status'), nullable=False),
        sa.Column('actor_id', sa.String(255), nullable=False),
        sa.Column('actor_role', sa.String(32), nullable=False),
        sa.Column('note', sa.String(1000), nullable=True),
        *timestamp_columns(),
    )
    op.create_index(
        'ix_order_status_history_order',
        'order_status_history',
        ['order_id', 'created_at'],
    )

    op.create_table(
        'inventory_transactions',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'product_id',
            sa.Uuid(),
            sa.ForeignKey('products.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('type', enum_column_type('inventory_transaction_type'), nullable=False),
        sa.Column(
            'adjustment_reason',
            enum_column_type('inventory_adjustment_reason'),
            nullable=True,
        ),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column(
            'reference_order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('notes', sa.String(1000), nullable=True),
        *timestamp_columns(),
        sa.CheckConstraint(
            'new_stock = previous_stock + quantity',
            name='ck_inventory_transactions_snapshot_consistent',
        ),
        sa.CheckConstraint(
            'new_stock >= 0', name='ck_inventory_transactions_new_stock_non_negative'
        ),
        sa.CheckConstraint(
            'quantity <> 0', name='ck_inventory_transactions_quantity_non_zero'
        ),
        sa.CheckConstraint(
            "(type = 'adjustment') = (adjustment_reason IS NOT NULL)",
            name='ck_inventory_transactions_adjustment_reason',
        ),
    )
    op.create_index(
        'ix_inventory_transactions_product_created',
        'inventory_transactions',
        ['product_id', 'created_at'],
    )
    op.create_index(
        'ix_inventory_transactions_reference_order',
        'inventory_transactions',
        ['reference_order_id'],
    )


def downgrade() -> None:
    """
    Downgrade by dropping every fulfillment table and enum type.
    """
    op.drop_index('ix_inventory_transactions_reference_order', table_name='inventory_transactions')
    op.drop_index('ix_inventory_transactions_product_created', table_name='inventory_transactions')
    op.drop_table('inventory_transactions')

    op.drop_index('ix_order_status_history_order', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_order_line_items_order', table_name='order_line_items')
    op.drop_table('order_line_items')

    op.drop_index('ix_orders_status_packing_activity', table_name='orders')
    op.drop_index('ix_orders_delivery_date_status', table_name='orders')
    op.drop_index('ix_orders_customer_status', table_name='orders')
    op.drop_table('orders')

    op.drop_table('route_optimizations')
    op.drop_table('products')
    op.drop_table('customers')

    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        for name in reversed(list(ENUMS)):
            postgresql.ENUM(name=name).drop(bind, checkfirst=True)
