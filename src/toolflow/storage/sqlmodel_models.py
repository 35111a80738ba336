"""SQLModel ORM tables for job, tool and queue storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class ProcessingJob(SQLModel, table=True):
    __tablename__ = "processing_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_processing_jobs_claimable", "status", "run_after", "created_at"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    workflow_definition: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    start_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    end_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    final_output: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("processing_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class McpTool(SQLModel, table=True):
    __tablename__ = "mcp_tools"  # type: ignore[bad-override]

    tool_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    gateway_url: str
    credit_cost_per_call: int = Field(default=0)
    developer_id: str = Field(index=True)
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueMessageRow(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_messages_ready", "topic", "visible_after", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    message_id: str = Field(index=True)
    topic: str
    message_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    timestamp_ms: int
    retry_count: int = Field(default=0)
    lease_owner: str | None = Field(default=None)
    visible_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
