"""b2b and customer orders

Revision ID: 0006_orders
Revises: 0005_shipments
Create Date: 2026-01-05 00:50:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0006_orders'
down_revision = '0005_shipments'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_type', sa.String(length=16), nullable=False),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('product_def_id', sa.Integer(), sa.ForeignKey('product_definitions.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Pending'),
        sa.Column('shipment_id', sa.Integer(), sa.ForeignKey('shipments.id'), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_orders_order_type'), 'orders', ['order_type'])
    op.create_index(op.f('ix_orders_buyer_id'), 'orders', ['buyer_id'])
    op.create_index(op.f('ix_orders_seller_id'), 'orders', ['seller_id'])
    op.create_index(op.f('ix_orders_shipment_id'), 'orders', ['shipment_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('product_units.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('order_id', 'item_id', name='uq_order_item'),
    )
    op.create_index(op.f('ix_order_items_order_id'), 'order_items', ['order_id'])
    op.create_index(op.f('ix_order_items_item_id'), 'order_items', ['item_id'])


def downgrade():
    op.drop_index(op.f('ix_order_items_item_id'), table_name='order_items')
    op.drop_index(op.f('ix_order_items_order_id'), table_name='order_items')
    op.drop_table('order_items')
    op.drop_index(op.f('ix_orders_shipment_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_seller_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_buyer_id'), table_name='orders')
    op.drop_index(op.f('ix_orders_order_type'), table_name='orders')
    op.drop_table('orders')
