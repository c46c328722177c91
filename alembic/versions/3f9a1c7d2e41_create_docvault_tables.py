"""create_docvault_tables

Revision ID: 3f9a1c7d2e41
Revises:
Create Date: 2026-10-19 09:12:44.201733

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c7d2e41'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Secondary backend index
    op.create_table(
        'document_metadata',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('byte_size', sa.Integer(), nullable=False),
        sa.Column('mime_type', sa.String(), nullable=False),
        sa.Column('checksum', sa.String(length=64), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=True),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('category', sa.String(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('external_key', sa.String(), nullable=False),
        sa.Column('extra_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_document_metadata_transaction_id', 'document_metadata', ['transaction_id'])

    op.create_table(
        'sync_queue_items',
        sa.Column('document_id', sa.String(), nullable=False),
        sa.Column('backend_name', sa.String(), nullable=False),
        sa.Column('payload_ref', sa.String(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('document_id', 'backend_name'),
    )

    op.create_table(
        'lock_records',
        sa.Column('transaction_id', sa.String(), nullable=False),
        sa.Column('document_id', sa.String(), nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False),
        sa.Column('locked_by', sa.String(), nullable=True),
        sa.Column('locked_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('can_be_unlocked', sa.Boolean(), nullable=False),
        sa.Column('unlocked_after_funding', sa.Boolean(), nullable=False),
        sa.Column('retention_policy_applied', sa.Boolean(), nullable=False),
        sa.Column('retention_end_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('verification_status', sa.String(), nullable=False),
        sa.Column('verification_proof', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('transaction_id', 'document_id'),
    )

    # Append-only audit log
    op.create_table(
        'vault_activity',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.String(), nullable=False),
        sa.Column('transaction_id', sa.String(), nullable=False),
        sa.Column('activity_type', sa.String(), nullable=False),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('timestamp', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('details', sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sequence', name='uq_vault_activity_sequence'),
    )
    op.create_index('ix_vault_activity_document_id', 'vault_activity', ['document_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_vault_activity_document_id', table_name='vault_activity')
    op.drop_table('vault_activity')
    op.drop_table('lock_records')
    op.drop_table('sync_queue_items')
    op.drop_index('ix_document_metadata_transaction_id', table_name='document_metadata')
    op.drop_table('document_metadata')
