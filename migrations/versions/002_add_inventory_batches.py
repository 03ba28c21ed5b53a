"""
Alembic migration: Inventory batches and route failure markers.

Adds received stock lots with FIFO consumption records, and a failure reason
on route optimizations so an area the provider could not optimize is
recorded instead of retried on every read. Stock already on hand is moved
into one opening batch per product so batch totals match the counters.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 15:00:00.000000
"""

import uuid
from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


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
    Upgrade database schema with inventory batches and route failure markers.
    """
    op.add_column(
        'route_optimizations',
        sa.Column(
            'failure_reason',
            sa.Text(),
            nullable=True,
            comment='Provider failure for the area, NULL when the route was optimized',
        ),
    )

    batches = op.create_table(
        'inventory_batches',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'product_id',
            sa.Uuid(),
            sa.ForeignKey('products.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('initial_quantity', sa.Integer(), nullable=False),
        sa.Column('quantity_remaining', sa.Integer(), nullable=False),
        sa.Column('cost_per_unit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('is_consumed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'source_transaction_id',
            sa.Uuid(),
            sa.ForeignKey('inventory_transactions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('notes', sa.String(1000), nullable=True),
        *timestamp_columns(),
        sa.CheckConstraint(
            'initial_quantity > 0', name='ck_inventory_batches_initial_positive'
        ),
        sa.CheckConstraint(
            'quantity_remaining >= 0 AND quantity_remaining <= initial_quantity',
            name='ck_inventory_batches_remaining_bounds',
        ),
        sa.CheckConstraint(
            'cost_per_unit >= 0', name='ck_inventory_batches_cost_non_negative'
        ),
    )
    op.create_index(
        'ix_inventory_batches_product_received',
        'inventory_batches',
        ['product_id', 'received_at'],
    )
    op.create_index('ix_inventory_batches_expiry', 'inventory_batches', ['expiry_date'])

    op.create_table(
        'batch_consumptions',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'batch_id',
            sa.Uuid(),
            sa.ForeignKey('inventory_batches.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column(
            'transaction_id',
            sa.Uuid(),
            sa.ForeignKey('inventory_transactions.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('quantity_returned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_per_unit', sa.Integer(), nullable=False),
        sa.Column('total_cost', sa.Integer(), nullable=False),
        sa.Column(
            'reference_order_id',
            sa.Uuid(),
            sa.ForeignKey('orders.id', ondelete='SET NULL'),
            nullable=True,
        ),
        *timestamp_columns(),
        sa.CheckConstraint('quantity > 0', name='ck_batch_consumptions_quantity_positive'),
        sa.CheckConstraint(
            'quantity_returned >= 0 AND quantity_returned <= quantity',
            name='ck_batch_consumptions_returned_bounds',
        ),
    )
    op.create_index('ix_batch_consumptions_batch', 'batch_consumptions', ['batch_id'])
    op.create_index(
        'ix_batch_consumptions_reference_order',
        'batch_consumptions',
        ['reference_order_id'],
    )

    # Opening batch per product for stock recorded before batches existed
    products = sa.table(
        'products',
        sa.column('id', sa.Uuid()),
        sa.column('current_stock', sa.Integer()),
    )
    rows = op.get_bind().execute(
        sa.select(products.c.id, products.c.current_stock).where(
            products.c.current_stock > 0
        )
    )
    now = datetime.now(timezone.utc)
    opening = [
        {
            'id': uuid.uuid4(),
            'product_id': product_id,
            'received_at': now,
            'initial_quantity': stock,
            'quantity_remaining': stock,
            'cost_per_unit': 0,
            'is_consumed': False,
            'notes': 'Stock on hand before batch tracking',
            'created_at': now,
            'updated_at': now,
        }
        for product_id, stock in rows
    ]
    if opening:
        op.bulk_insert(batches, opening)


def downgrade() -> None:
    """
    Downgrade by dropping the batch tables and the route failure column.
    """
    op.drop_index('ix_batch_consumptions_reference_order', table_name='batch_consumptions')
    op.drop_index('ix_batch_consumptions_batch', table_name='batch_consumptions')
    op.drop_table('batch_consumptions')

    op.drop_index('ix_inventory_batches_expiry', table_name='inventory_batches')
    op.drop_index('ix_inventory_batches_product_received', table_name='inventory_batches')
    op.drop_table('inventory_batches')

    op.drop_column('route_optimizations', 'failure_reason')
