"""Create update attempt tracking

Revision ID: 20261018_0900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261018_0900"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Add update_attempts table"""
    op.create_table(
        "update_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("from_version", sa.String(length=50), nullable=False),
        sa.Column("to_version", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("download_url", sa.String(length=1000), nullable=True),
        sa.Column("checksum", sa.String(length=128), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("changelog", sa.Text(), nullable=True),
        sa.Column("release_notes", sa.Text(), nullable=True),
        sa.Column("backup_id", sa.String(length=255), nullable=True),
        sa.Column("migrations_run", sa.JSON(), nullable=False),
        sa.Column("migration_logs", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("initiated_by", sa.String(length=255), nullable=True),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("rolled_back", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("rollback_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'downloading', 'downloaded', 'backing_up', 'applying', "
            "'migrating', 'verifying', 'completed', 'failed', 'rolled_back')",
            name="update_attempts_status_check",
        ),
    )

    op.create_index(
        "idx_update_attempts_status",
        "update_attempts",
        ["status"],
    )
    op.create_index(
        "idx_update_attempts_started_at",
        "update_attempts",
        ["started_at"],
    )


def downgrade() -> None:
    """Remove update_attempts table"""
    op.drop_index("idx_update_attempts_started_at", table_name="update_attempts")
    op.drop_index("idx_update_attempts_status", table_name="update_attempts")
    op.drop_table("update_attempts")
