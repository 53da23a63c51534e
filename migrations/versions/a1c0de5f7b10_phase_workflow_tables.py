"""Phase workflow: ledger, client actions, transitions, notices, notifications, jobs

Revision ID: a1c0de5f7b10
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

revision = "a1c0de5f7b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "phase_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=False, index=True),
        sa.Column("phase_index", sa.Integer(), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entered_by", sa.String(150), nullable=True),
        sa.Column("auto_advance_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stuck_notifications_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stuck_threshold_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("phase_index >= 0 AND phase_index <= 7", name="ck_ledger_phase_range"),
        sa.CheckConstraint("stuck_threshold_days >= 1", name="ck_ledger_stuck_threshold"),
    )
    op.create_index("ix_ledger_project_entered", "phase_ledger_entries", ["project_id", "entered_at"])
    op.create_index(
        "uq_ledger_open_entry",
        "phase_ledger_entries",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("exited_at IS NULL"),
        sqlite_where=sa.text("exited_at IS NULL"),
    )

    op.create_table(
        "client_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=False, index=True),
        sa.Column("phase_index", sa.Integer(), nullable=False),
        sa.Column("ledger_entry_id", sa.Integer(),
                  sa.ForeignKey("phase_ledger_entries.id", ondelete="CASCADE"), nullable=True),
        sa.Column("action_key", sa.String(60), nullable=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("requirement_type", sa.String(30), server_default="custom"),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_client_facing", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source", sa.String(20), nullable=False, server_default="template"),
        sa.Column("sort_order", sa.Integer(), server_default="0"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(150), nullable=True),
        sa.Column("notes", sa.Text(), server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("phase_index >= 0 AND phase_index <= 7", name="ck_action_phase_range"),
    )
    op.create_index("ix_action_project_phase", "client_actions", ["project_id", "phase_index"])
    op.create_index("ix_action_entry", "client_actions", ["ledger_entry_id"])

    op.create_table(
        "phase_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=False, index=True),
        sa.Column("from_phase_index", sa.Integer(), nullable=False),
        sa.Column("to_phase_index", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.String(30), nullable=False),
        sa.Column("actor_id", sa.String(150), nullable=True),
        sa.Column("notes", sa.Text(), server_default=""),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("to_entry_id", sa.Integer(),
                  sa.ForeignKey("phase_ledger_entries.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("ix_transition_project_ts", "phase_transitions", ["project_id", "timestamp"])

    op.create_table(
        "automation_notices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ledger_entry_id", sa.Integer(),
                  sa.ForeignKey("phase_ledger_entries.id", ondelete="CASCADE"), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False, index=True),
        sa.Column("phase_index", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("first_notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notify_count", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("ledger_entry_id", "kind", name="uq_notice_entry_kind"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.String(64), nullable=True, index=True),
        sa.Column("recipient", sa.String(150), server_default="all", index=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("category", sa.String(30), server_default="system"),
        sa.Column("severity", sa.String(20), server_default="info"),
        sa.Column("entity_type", sa.String(30), server_default=""),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(40), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), server_default=""),
        sa.Column("interval_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("is_enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("run_count", sa.Integer(), server_default="0"),
        sa.Column("error_count", sa.Integer(), server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("scheduled_jobs")
    op.drop_table("notifications")
    op.drop_table("automation_notices")
    op.drop_index("ix_transition_project_ts", table_name="phase_transitions")
    op.drop_table("phase_transitions")
    op.drop_index("ix_action_entry", table_name="client_actions")
    op.drop_index("ix_action_project_phase", table_name="client_actions")
    op.drop_table("client_actions")
    op.drop_index("uq_ledger_open_entry", table_name="phase_ledger_entries")
    op.drop_index("ix_ledger_project_entered", table_name="phase_ledger_entries")
    op.drop_table("phase_ledger_entries")
