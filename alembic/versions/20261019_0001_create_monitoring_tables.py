"""create scan_sessions, scan_jobs, entity_snapshots and change_records tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scan_sessions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_type", sa.String(length=32), nullable=False, comment="manual, scheduled"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("triggered_by", sa.String(length=255), nullable=True),
        sa.Column("jobs_total", sa.Integer(), nullable=False),
        sa.Column("jobs_done", sa.Integer(), nullable=False),
        sa.Column("jobs_failed", sa.Integer(), nullable=False),
        sa.Column("new_count", sa.Integer(), nullable=False),
        sa.Column("updated_count", sa.Integer(), nullable=False),
        sa.Column("unchanged_count", sa.Integer(), nullable=False),
        sa.Column("deleted_count", sa.Integer(), nullable=False),
        sa.Column("items_seen", sa.Integer(), nullable=False),
        sa.Column("failure_tolerance", sa.Float(), nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("configuration", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scan_sessions_status", "scan_sessions", ["status"], unique=False)
    op.create_index("ix_scan_sessions_created_at", "scan_sessions", ["created_at"], unique=False)

    op.create_table(
        "scan_jobs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("target_kind", sa.String(length=16), nullable=False, comment="page, entity"),
        sa.Column("target_value", sa.String(length=255), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_token", sa.String(length=128), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result_payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["scan_id"], ["scan_sessions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scan_jobs_scan_id", "scan_jobs", ["scan_id"], unique=False)
    op.create_index(
        "ix_scan_jobs_dispatch",
        "scan_jobs",
        ["state", "available_at", "priority"],
        unique=False,
    )
    op.create_index("ix_scan_jobs_lease", "scan_jobs", ["state", "lease_expires_at"], unique=False)

    op.create_table(
        "entity_snapshots",
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("fields", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("content_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("first_seen_scan_id", sa.Integer(), nullable=False),
        sa.Column("last_seen_scan_id", sa.Integer(), nullable=False),
        sa.Column("last_changed_scan_id", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("entity_id"),
    )
    op.create_index(
        "ix_entity_snapshots_active_last_seen",
        "entity_snapshots",
        ["active", "last_seen_scan_id"],
        unique=False,
    )

    op.create_table(
        "change_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("change_id", sa.Uuid(), nullable=False),
        sa.Column("scan_id", sa.Integer(), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column(
            "change_type",
            sa.String(length=16),
            nullable=False,
            comment="new, updated, deleted, unchanged",
        ),
        sa.Column("field_name", sa.String(length=128), nullable=True),
        sa.Column("old_value", sa.Text(), nullable=True),
        sa.Column("new_value", sa.Text(), nullable=True),
        sa.Column("change_score", sa.Float(), nullable=False),
        sa.Column("change_percentage", sa.Float(), nullable=True),
        sa.Column("listing_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["scan_id"], ["scan_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("change_id"),
    )
    op.create_index(
        "ix_change_records_entity_detected",
        "change_records",
        ["entity_id", "detected_at"],
        unique=False,
    )
    op.create_index("ix_change_records_scan_id", "change_records", ["scan_id"], unique=False)
    op.create_index("ix_change_records_change_type", "change_records", ["change_type"], unique=False)
    op.create_index("ix_change_records_detected_at", "change_records", ["detected_at"], unique=False)
    op.create_index(
        "uq_change_records_entity_event",
        "change_records",
        ["scan_id", "entity_id"],
        unique=True,
        postgresql_where=sa.text("change_type IN ('new', 'deleted')"),
    )


def downgrade() -> None:
    op.drop_index("uq_change_records_entity_event", table_name="change_records")
    op.drop_index("ix_change_records_detected_at", table_name="change_records")
    op.drop_index("ix_change_records_change_type", table_name="change_records")
    op.drop_index("ix_change_records_scan_id", table_name="change_records")
    op.drop_index("ix_change_records_entity_detected", table_name="change_records")
    op.drop_table("change_records")

    op.drop_index("ix_entity_snapshots_active_last_seen", table_name="entity_snapshots")
    op.drop_table("entity_snapshots")

    op.drop_index("ix_scan_jobs_lease", table_name="scan_jobs")
    op.drop_index("ix_scan_jobs_dispatch", table_name="scan_jobs")
    op.drop_index("ix_scan_jobs_scan_id", table_name="scan_jobs")
    op.drop_table("scan_jobs")

    op.drop_index("ix_scan_sessions_created_at", table_name="scan_sessions")
    op.drop_index("ix_scan_sessions_status", table_name="scan_sessions")
    op.drop_table("scan_sessions")
