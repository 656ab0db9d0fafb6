"""Create durable session queue table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "session_queue",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("provider_name", sa.String(), server_default="claude", nullable=False),
        sa.Column("working_directory", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("result_model", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("channel_id", sa.String(), nullable=False),
        sa.Column("channel_platform", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_session_queue_status", "session_queue", ["status"], unique=False)
    op.create_index(
        "idx_session_queue_claim",
        "session_queue",
        ["status", "created_at", "id"],
        unique=False,
    )
    op.create_index(
        "idx_session_queue_channel",
        "session_queue",
        ["channel_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_session_queue_channel", table_name="session_queue")
    op.drop_index("idx_session_queue_claim", table_name="session_queue")
    op.drop_index("ix_session_queue_status", table_name="session_queue")
    op.drop_table("session_queue")
