"""Normalize categories and add account/pot metadata

Revision ID: 0002_normalize_categories
Revises: 0001_initial
Create Date: 2024-07-14

Second schema generation:
- accounts gain currency and country_code
- pots gain pot_type
- new categories table
- transactions.category (free text) is replaced by
  category_id NOT NULL -> categories.id

Existing transaction rows are preserved: every distinct legacy category
string becomes a categories row before the old column is dropped. Rows with
a NULL or empty category are assigned the 'uncategorized' sentinel.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_normalize_categories'
down_revision = '0001_initial'
branch_labels = None
depends_on = None

UNCATEGORIZED_ID = 'uncategorized'
UNCATEGORIZED_NAME = 'Uncategorized'


def upgrade() -> None:
    """Upgrade v1 tables to the normalized v2 layout."""

    op.add_column(
        'accounts',
        sa.Column('currency', sa.Text(), nullable=False, server_default=''),
    )
    op.add_column(
        'accounts',
        sa.Column('country_code', sa.Text(), nullable=False, server_default=''),
    )
    op.add_column(
        'pots',
        sa.Column('pot_type', sa.Text(), nullable=False, server_default=''),
    )

    op.create_table(
        'categories',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # Resolve legacy free-text categories into rows before the FK exists
    op.add_column('transactions', sa.Column('category_id', sa.Text(), nullable=True))
    op.execute(
        sa.text(
            "UPDATE transactions "
            "SET category_id = COALESCE(NULLIF(TRIM(category), ''), :sentinel)"
        ).bindparams(sentinel=UNCATEGORIZED_ID)
    )
    op.execute(
        sa.text(
            "INSERT OR IGNORE INTO categories (id, name) "
            "SELECT DISTINCT category_id, "
            "CASE WHEN category_id = :sentinel THEN :sentinel_name "
            "ELSE category_id END "
            "FROM transactions"
        ).bindparams(sentinel=UNCATEGORIZED_ID, sentinel_name=UNCATEGORIZED_NAME)
    )

    # SQLite cannot add a constraint in place; rebuild the table
    with op.batch_alter_table('transactions', recreate='always') as batch_op:
        batch_op.alter_column(
            'category_id', existing_type=sa.Text(), nullable=False
        )
        batch_op.create_foreign_key(
            'fk_transactions_category_id_categories',
            'categories',
            ['category_id'],
            ['id'],
        )
        batch_op.drop_column('category')


def downgrade() -> None:
    """Fold categories back into the free-text column."""

    op.add_column('transactions', sa.Column('category', sa.Text(), nullable=True))
    op.execute(sa.text("UPDATE transactions SET category = category_id"))

    with op.batch_alter_table('transactions', recreate='always') as batch_op:
        batch_op.drop_constraint(
            'fk_transactions_category_id_categories', type_='foreignkey'
        )
        batch_op.drop_column('category_id')

    op.drop_table('categories')

    with op.batch_alter_table('pots') as batch_op:
        batch_op.drop_column('pot_type')
    with op.batch_alter_table('accounts') as batch_op:
        batch_op.drop_column('country_code')
        batch_op.drop_column('currency')
