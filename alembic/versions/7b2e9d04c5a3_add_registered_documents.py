"""add_registered_documents

Revision ID: 7b2e9d04c5a3
Revises: 3f9a1c7d2e41
Create Date: 2026-10-19 14:03:27.518064

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7b2e9d04c5a3'
down_revision: Union[str, Sequence[str], None] = '3f9a1c7d2e41'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'registered_documents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('document', sa.JSON(), nullable=False),
        sa.Column('backend_refs', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_registered_documents_transaction_id', 'registered_documents', ['transaction_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_registered_documents_transaction_id', table_name='registered_documents')
    op.drop_table('registered_documents')
