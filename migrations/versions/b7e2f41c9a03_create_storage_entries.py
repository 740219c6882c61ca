"""create storage_entries table for the persisted portrait store

Revision ID: b7e2f41c9a03
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7e2f41c9a03'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'storage_entries',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('key'),
    )


def downgrade():
    op.drop_table('storage_entries')
