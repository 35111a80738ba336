"""Create job, registry and queue tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processing_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("workflow_definition", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_output", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
        sa.CheckConstraint("retry_count >= 0", name="ck_processing_jobs_retry_count"),
    )
    op.create_index("ix_processing_jobs_user_id", "processing_jobs", ["user_id"])
    op.create_index("ix_processing_jobs_status", "processing_jobs", ["status"])
    op.create_index("ix_processing_jobs_worker_id", "processing_jobs", ["worker_id"])
    op.create_index(
        "idx_processing_jobs_claimable",
        "processing_jobs",
        ["status", "run_after", "created_at"],
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["processing_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"])
    op.create_index("idx_job_events_job_time", "job_events", ["job_id", "created_at"])

    op.create_table(
        "mcp_tools",
        sa.Column("tool_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("gateway_url", sa.String(), nullable=False),
        sa.Column("credit_cost_per_call", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("developer_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tool_id"),
    )
    op.create_index("ix_mcp_tools_name", "mcp_tools", ["name"])
    op.create_index("ix_mcp_tools_developer_id", "mcp_tools", ["developer_id"])
    op.create_index("ix_mcp_tools_status", "mcp_tools", ["status"])

    op.create_table(
        "queue_messages",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("timestamp_ms", sa.Integer(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("visible_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
    )
    op.create_index("ix_queue_messages_message_id", "queue_messages", ["message_id"])
    op.create_index(
        "idx_queue_messages_ready",
        "queue_messages",
        ["topic", "visible_after", "seq"],
    )


def downgrade() -> None:
    op.drop_index("idx_queue_messages_ready", table_name="queue_messages")
    op.drop_index("ix_queue_messages_message_id", table_name="queue_messages")
    op.drop_table("queue_messages")
    op.drop_index("ix_mcp_tools_status", table_name="mcp_tools")
    op.drop_index("ix_mcp_tools_developer_id", table_name="mcp_tools")
    op.drop_index("ix_mcp_tools_name", table_name="mcp_tools")
    op.drop_table("mcp_tools")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_processing_jobs_claimable", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_worker_id", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_status", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_user_id", table_name="processing_jobs")
    op.drop_table("processing_jobs")
