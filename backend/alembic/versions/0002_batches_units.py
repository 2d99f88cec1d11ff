"""production batches and product units

Revision ID: 0002_batches_units
Revises: 0001_users_and_audit
Create Date: 2026-01-05 00:10:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_batches_units'
down_revision = '0001_users_and_audit'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'production_batches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_number', sa.String(length=64), nullable=False),
        sa.Column('product_def_id', sa.Integer(), sa.ForeignKey('product_definitions.id'), nullable=False),
        sa.Column('manufacturer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('manufacturing_date', sa.Date(), nullable=False),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Active'),  # Active, Completed, Recalled
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_production_batches_batch_number'), 'production_batches', ['batch_number'], unique=True)
    op.create_index(op.f('ix_production_batches_product_def_id'), 'production_batches', ['product_def_id'])
    op.create_index(op.f('ix_production_batches_manufacturer_id'), 'production_batches', ['manufacturer_id'])

    op.create_table(
        'product_units',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('production_batches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('serial_code', sa.String(length=96), nullable=False),
        sa.Column('auth_hash', sa.String(length=64), nullable=False),
        sa.Column('nonce', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Manufactured'),
        sa.Column('holder_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_product_units_serial_code'), 'product_units', ['serial_code'], unique=True)
    op.create_index(op.f('ix_product_units_batch_id'), 'product_units', ['batch_id'])
    op.create_index(op.f('ix_product_units_holder_id'), 'product_units', ['holder_id'])


def downgrade():
    op.drop_index(op.f('ix_product_units_holder_id'), table_name='product_units')
    op.drop_index(op.f('ix_product_units_batch_id'), table_name='product_units')
    op.drop_index(op.f('ix_product_units_serial_code'), table_name='product_units')
    op.drop_table('product_units')
    op.drop_index(op.f('ix_production_batches_manufacturer_id'), table_name='production_batches')
    op.drop_index(op.f('ix_production_batches_product_def_id'), table_name='production_batches')
    op.drop_index(op.f('ix_production_batches_batch_number'), table_name='production_batches')
    op.drop_table('production_batches')
