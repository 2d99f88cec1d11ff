"""scan records, recalls and risk alerts

Revision ID: 0004_scans_recalls_alerts
Revises: 0003_ledger_entries
Create Date: 2026-01-05 00:30:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0004_scans_recalls_alerts'
down_revision = '0003_ledger_entries'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'scan_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('serial_code', sa.String(length=255), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('product_units.id', ondelete='SET NULL'), nullable=True),
        sa.Column('scan_result', sa.String(length=16), nullable=False),  # Valid, Fake, Duplicate
        sa.Column('scanning_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('scan_time', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_scan_records_serial_code'), 'scan_records', ['serial_code'])
    op.create_index(op.f('ix_scan_records_item_id'), 'scan_records', ['item_id'])
    op.create_index(op.f('ix_scan_records_scanning_user_id'), 'scan_records', ['scanning_user_id'])
    op.create_index(op.f('ix_scan_records_scan_time'), 'scan_records', ['scan_time'])

    op.create_table(
        'recalls',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('batch_id', sa.Integer(), sa.ForeignKey('production_batches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Active'),
        sa.Column('initiated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('recall_date', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_recalls_batch_id'), 'recalls', ['batch_id'])

    op.create_table(
        'risk_alerts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('alert_type', sa.String(length=64), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False, server_default='Medium'),
        sa.Column('related_entity', sa.String(length=32), nullable=False),
        sa.Column('related_id', sa.String(length=96), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='New'),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(op.f('ix_risk_alerts_related_id'), 'risk_alerts', ['related_id'])
    op.create_index(op.f('ix_risk_alerts_created_at'), 'risk_alerts', ['created_at'])


def downgrade():
    op.drop_index(op.f('ix_risk_alerts_created_at'), table_name='risk_alerts')
    op.drop_index(op.f('ix_risk_alerts_related_id'), table_name='risk_alerts')
    op.drop_table('risk_alerts')
    op.drop_index(op.f('ix_recalls_batch_id'), table_name='recalls')
    op.drop_table('recalls')
    op.drop_index(op.f('ix_scan_records_scan_time'), table_name='scan_records')
    op.drop_index(op.f('ix_scan_records_scanning_user_id'), table_name='scan_records')
    op.drop_index(op.f('ix_scan_records_item_id'), table_name='scan_records')
    op.drop_index(op.f('ix_scan_records_serial_code'), table_name='scan_records')
    op.drop_table('scan_records')
