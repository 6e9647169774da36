"""SQLModel ORM tables for the work-item queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("repo", "ticket_number", name="uq_work_items_repo_ticket"),
        Index(
            "uq_work_items_single_processing",
            "status",
            unique=True,
            sqlite_where=text("status = 'processing'"),
        ),
        Index("idx_work_items_dequeue", "status", "priority_rank", "queued_at"),
    )

    item_id: int | None = Field(default=None, primary_key=True)
    repo: str = Field(index=True)
    ticket_number: int
    title: str
    body: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    labels_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    priority: str = "medium"
    priority_rank: int = 2
    pipeline_type: str | None = None
    status: str = Field(index=True)
    url: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    retry_count: int = 0
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_class: str | None = None
    external_ref: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Run(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    run_id: int | None = Field(default=None, primary_key=True)
    item_id: int = Field(
        sa_column=Column(
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt: int
    pipeline_type: str | None = None
    model: str | None = None
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    solution: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_class: str | None = None
    exit_code: int | None = None


class Artifact(SQLModel, table=True):
    __tablename__ = "artifacts"  # type: ignore[bad-override]

    artifact_id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(
        sa_column=Column(
            ForeignKey("runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    filename: str
    category: str = Field(index=True)
    size_bytes: int
    path: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
