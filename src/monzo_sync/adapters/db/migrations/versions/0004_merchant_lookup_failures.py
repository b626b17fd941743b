"""Remember merchants the API refused to resolve

Revision ID: 0004_merchant_lookup_failures
Revises: 0003_sync_watermarks
Create Date: 2024-09-14
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0004_merchant_lookup_failures'
down_revision = '0003_sync_watermarks'
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create merchant_lookup_failures."""
    op.create_table(
        'merchant_lookup_failures',
        sa.Column('merchant_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Integer(), nullable=False),
        sa.Column('failed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('merchant_id'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id']),
    )


def downgrade() -> None:
    """Drop merchant_lookup_failures."""
    op.drop_table('merchant_lookup_failures')
