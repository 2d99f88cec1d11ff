"""users, audit_logs and product definitions

Revision ID: 0001_users_and_audit
Revises:
Create Date: 2026-01-05 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_users_and_audit'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=150), nullable=False),
        sa.Column('email', sa.String(length=254), nullable=True),
        sa.Column('hashed_password', sa.String(length=512), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='Customer'),
        sa.Column('display_name', sa.String(length=254), nullable=True),
        sa.Column('organization', sa.String(length=254), nullable=True),
        sa.Column('license_number', sa.String(length=128), nullable=True),
        sa.Column('location', sa.String(length=254), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f('ix_users_username'), 'users', ['username'], unique=True)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('path', sa.String(length=1024), nullable=False),
        sa.Column('method', sa.String(length=10), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'product_definitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('manufacturer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(length=512), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=128), nullable=True),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('image_url', sa.String(length=1024), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f('ix_product_definitions_manufacturer_id'), 'product_definitions', ['manufacturer_id'])
    op.create_index(op.f('ix_product_definitions_category'), 'product_definitions', ['category'])


def downgrade():
    op.drop_index(op.f('ix_product_definitions_category'), table_name='product_definitions')
    op.drop_index(op.f('ix_product_definitions_manufacturer_id'), table_name='product_definitions')
    op.drop_table('product_definitions')
    op.drop_table('audit_logs')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_index(op.f('ix_users_username'), table_name='users')
    op.drop_table('users')
