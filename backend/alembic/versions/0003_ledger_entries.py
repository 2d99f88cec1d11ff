"""hash-chained ledger entries per product unit

Revision ID: 0003_ledger_entries
Revises: 0002_batches_units
Create Date: 2026-01-05 00:20:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_ledger_entries'
down_revision = '0002_batches_units'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(16), nullable=False),  # Manufactured, Shipped, Received, Stored, Sold, Recalled
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('actor_name', sa.String(254), nullable=True),
        sa.Column('location', sa.String(254), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=False),
        sa.Column('current_hash', sa.String(64), nullable=False),  # SHA256 of canonical entry payload
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['item_id'], ['product_units.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['actor_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('item_id', 'sequence', name='uq_ledger_item_sequence'),
    )
    op.create_index(op.f('ix_ledger_entries_item_id'), 'ledger_entries', ['item_id'])
    op.create_index(op.f('ix_ledger_entries_actor_id'), 'ledger_entries', ['actor_id'])
    op.create_index(op.f('ix_ledger_entries_current_hash'), 'ledger_entries', ['current_hash'], unique=True)
    op.create_index(op.f('ix_ledger_entries_created_at'), 'ledger_entries', ['created_at'])


def downgrade() -> None:
    op.drop_index(op.f('ix_ledger_entries_created_at'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_current_hash'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_actor_id'), table_name='ledger_entries')
    op.drop_index(op.f('ix_ledger_entries_item_id'), table_name='ledger_entries')
    op.drop_table('ledger_entries')
