"""Create the orchestration tables.

Revision ID: 0001_ops_core
Revises:
Create Date: 2026-02-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_ops_core"
down_revision = None
branch_labels = None
depends_on = None


def _status(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create events, policy, reaction, proposal, mission and step tables."""
    op.create_table(
        "ops_proposals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source", sa.String(length=200), nullable=False),
        sa.Column("dedupe_key", sa.String(length=300), nullable=False, unique=True),
        sa.Column("template", sa.JSON(), nullable=False),
        sa.Column("context", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            _status("proposal_status", "pending", "approved", "auto_approved", "rejected"),
            nullable=False,
        ),
        _timestamp("approved_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "ops_missions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("proposal_id", sa.Integer(), sa.ForeignKey("ops_proposals.id"), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column(
            "status",
            _status("mission_status", "running", "succeeded", "failed"),
            nullable=False,
        ),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("completed_at", nullable=True),
    )
    op.create_table(
        "ops_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(length=200), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("annotation", sa.Text(), nullable=True),
        sa.Column("dedupe_key", sa.String(length=300), nullable=True, unique=True),
        sa.Column("mission_id", sa.Integer(), sa.ForeignKey("ops_missions.id"), nullable=True),
        _timestamp("created_at"),
        _timestamp("processed_at", nullable=True),
    )
    op.create_index("ix_ops_events_pending", "ops_events", ["processed_at", "created_at"])
    op.create_table(
        "ops_policy",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=200), nullable=False, unique=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        _timestamp("updated_at"),
    )
    op.create_table(
        "ops_reactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.Integer(), sa.ForeignKey("ops_events.id"), nullable=False),
        sa.Column("pattern_id", sa.String(length=200), nullable=True),
        sa.Column(
            "status",
            _status("reaction_status", "queued", "done", "failed"),
            nullable=False,
        ),
        sa.Column("payload", sa.JSON(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_ops_reactions_pattern_id", "ops_reactions", ["pattern_id"])
    op.create_table(
        "ops_mission_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mission_id", sa.Integer(), sa.ForeignKey("ops_missions.id"), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=200), nullable=False),
        sa.Column("executor", sa.String(length=200), nullable=True),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _status("step_status", "queued", "running", "succeeded", "failed"),
            nullable=False,
        ),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        _timestamp("reserved_at", nullable=True),
        _timestamp("lease_expires_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_ops_mission_steps_status_created",
        "ops_mission_steps",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_ops_mission_steps_mission",
        "ops_mission_steps",
        ["mission_id", "step_index"],
        unique=True,
    )
    op.create_table(
        "ops_action_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("run_id", sa.String(length=200), nullable=False, unique=True),
        sa.Column("step_id", sa.Integer(), sa.ForeignKey("ops_mission_steps.id"), nullable=False),
        sa.Column("executor", sa.String(length=200), nullable=True),
        sa.Column(
            "status",
            _status("action_run_status", "started", "succeeded", "failed"),
            nullable=False,
        ),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
    )
    op.create_table(
        "ops_dead_letters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "step_id",
            sa.Integer(),
            sa.ForeignKey("ops_mission_steps.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("mission_id", sa.Integer(), sa.ForeignKey("ops_missions.id"), nullable=False),
        sa.Column("kind", sa.String(length=200), nullable=False),
        sa.Column("executor", sa.String(length=200), nullable=True),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "ops_radar_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=100), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "ops_delivery_receipts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=300), nullable=False, unique=True),
        sa.Column("step_id", sa.Integer(), sa.ForeignKey("ops_mission_steps.id"), nullable=True),
        sa.Column("channel", sa.String(length=100), nullable=False),
        sa.Column("response", sa.JSON(), nullable=True),
        _timestamp("created_at"),
    )


def downgrade() -> None:
    """Drop the orchestration tables."""
    op.drop_table("ops_delivery_receipts")
    op.drop_table("ops_radar_items")
    op.drop_table("ops_dead_letters")
    op.drop_table("ops_action_runs")
    op.drop_index("ix_ops_mission_steps_mission", table_name="ops_mission_steps")
    op.drop_index("ix_ops_mission_steps_status_created", table_name="ops_mission_steps")
    op.drop_table("ops_mission_steps")
    op.drop_index("ix_ops_reactions_pattern_id", table_name="ops_reactions")
    op.drop_table("ops_reactions")
    op.drop_table("ops_policy")
    op.drop_index("ix_ops_events_pending", table_name="ops_events")
    op.drop_table("ops_events")
    op.drop_table("ops_missions")
    op.drop_table("ops_proposals")
