"""shipments between manufacturers and retailers

Revision ID: 0005_shipments
Revises: 0004_scans_recalls_alerts
Create Date: 2026-01-05 00:40:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0005_shipments'
down_revision = '0004_scans_recalls_alerts'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'shipments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('manufacturer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('retailer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Pending'),
        sa.Column('origin', sa.String(length=254), nullable=True),
        sa.Column('destination', sa.String(length=254), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
    )
    op.create_index(op.f('ix_shipments_manufacturer_id'), 'shipments', ['manufacturer_id'])
    op.create_index(op.f('ix_shipments_retailer_id'), 'shipments', ['retailer_id'])

    op.create_table(
        'shipment_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('shipment_id', sa.Integer(), sa.ForeignKey('shipments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('product_units.id', ondelete='CASCADE'), nullable=False),
        sa.UniqueConstraint('shipment_id', 'item_id', name='uq_shipment_item'),
    )
    op.create_index(op.f('ix_shipment_items_shipment_id'), 'shipment_items', ['shipment_id'])
    op.create_index(op.f('ix_shipment_items_item_id'), 'shipment_items', ['item_id'])


def downgrade():
    op.drop_index(op.f('ix_shipment_items_item_id'), table_name='shipment_items')
    op.drop_index(op.f('ix_shipment_items_shipment_id'), table_name='shipment_items')
    op.drop_table('shipment_items')
    op.drop_index(op.f('ix_shipments_retailer_id'), table_name='shipments')
    op.drop_index(op.f('ix_shipments_manufacturer_id'), table_name='shipments')
    op.drop_table('shipments')
