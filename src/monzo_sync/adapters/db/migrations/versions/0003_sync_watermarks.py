"""Per-account sync watermarks

Revision ID: 0003_sync_watermarks
Revises: 0002_normalize_categories
Create Date: 2024-08-02
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_sync_watermarks'
down_revision = '0002_normalize_categories'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create sync_watermarks."""
    op.create_table(
        'sync_watermarks',
        sa.Column('account_id', sa.Text(), nullable=False),
        sa.Column('synced_until', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('account_id'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
    )


def downgrade() -> None:
    """Drop sync_watermarks."""
    op.drop_table('sync_watermarks')
