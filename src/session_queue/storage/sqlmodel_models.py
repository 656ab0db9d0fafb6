"""SQLModel ORM tables for the session queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel

DEFAULT_PROVIDER = "claude"


class QueuedJob(SQLModel, table=True):
    __tablename__ = "session_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_session_queue_claim", "status", "created_at", "id"),
        Index("idx_session_queue_channel", "channel_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    provider_name: str = Field(default=DEFAULT_PROVIDER)
    working_directory: str | None = None
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    result_model: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    channel_id: str
    channel_platform: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
