"""Workflow definitions and participant state."""

from __future__ import annotations

from typing import Sequence

import sqlalchemy as sa
from alembic import op

from lead_workflows.models.base import GUID, JSONBType, UTCDateTime

# revision identifiers, used by Alembic.
revision: str = "202410010001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


workflow_status_enum = sa.Enum(
    "draft",
    "active",
    "paused",
    "archived",
    name="workflow_status",
)

workflow_trigger_type_enum = sa.Enum(
    "lead_created",
    "tag_added",
    "tag_removed",
    "score_changed",
    "email_opened",
    "email_clicked",
    "page_visited",
    "form_submitted",
    "purchase_made",
    "funnel_step_completed",
    "challenge_day_completed",
    "custom_event",
    "scheduled",
    "webhook",
    "manual",
    name="workflow_trigger_type",
)

participant_status_enum = sa.Enum(
    "active",
    "waiting",
    "completed",
    "exited",
    "failed",
    name="participant_status",
)


def upgrade() -> None:
    op.create_table(
        "workflows",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("created_at", UTCDateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", workflow_status_enum, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("trigger_type", workflow_trigger_type_enum, nullable=False),
        sa.Column("trigger_config", JSONBType, nullable=False),
        sa.Column("nodes", JSONBType, nullable=False),
        sa.Column("edges", JSONBType, nullable=False),
        sa.Column("settings", JSONBType, nullable=False),
        sa.Column("tags", JSONBType, nullable=False),
        sa.Column("total_entered", sa.Integer(), nullable=False),
        sa.Column("currently_active", sa.Integer(), nullable=False),
        sa.Column("completed", sa.Integer(), nullable=False),
        sa.Column("exited", sa.Integer(), nullable=False),
        sa.Column("goal_achieved", sa.Integer(), nullable=False),
        sa.Column("activated_at", UTCDateTime(), nullable=True),
    )
    op.create_index("ix_workflows_name", "workflows", ["name"], unique=False)
    op.create_index(
        "ix_workflows_status_trigger_type",
        "workflows",
        ["status", "trigger_type"],
        unique=False,
    )

    op.create_table(
        "workflow_participants",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("created_at", UTCDateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "workflow_id",
            GUID(),
            sa.ForeignKey("workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("lead_id", sa.String(length=128), nullable=False),
        sa.Column("status", participant_status_enum, nullable=False),
        sa.Column("current_node_id", sa.String(length=128), nullable=True),
        sa.Column("entered_at", UTCDateTime(), nullable=False),
        sa.Column("completed_at", UTCDateTime(), nullable=True),
        sa.Column("exited_at", UTCDateTime(), nullable=True),
        sa.Column("exit_reason", sa.Text(), nullable=True),
        sa.Column("waiting_until", UTCDateTime(), nullable=True),
        sa.Column("last_activity_at", UTCDateTime(), nullable=False),
        sa.Column("branch_path", JSONBType, nullable=False),
        sa.Column("split_variant_id", sa.String(length=128), nullable=True),
        sa.Column("goal_achieved", sa.Boolean(), nullable=False),
        sa.Column("goal_achieved_at", UTCDateTime(), nullable=True),
        sa.Column("log", JSONBType, nullable=False),
        sa.Column("trigger_data", JSONBType, nullable=False),
        sa.Column("enrollment_count", sa.Integer(), nullable=False),
        sa.Column("exclusive_key", sa.String(length=200), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("exclusive_key", name="uq_workflow_participants_exclusive_key"),
    )
    op.create_index(
        "ix_workflow_participants_workflow_lead",
        "workflow_participants",
        ["workflow_id", "lead_id"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_participants_status_waiting_until",
        "workflow_participants",
        ["status", "waiting_until"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_participants_status_last_activity",
        "workflow_participants",
        ["status", "last_activity_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        "ix_workflow_participants_status_last_activity", table_name="workflow_participants"
    )
    op.drop_index(
        "ix_workflow_participants_status_waiting_until", table_name="workflow_participants"
    )
    op.drop_index("ix_workflow_participants_workflow_lead", table_name="workflow_participants")
    op.drop_table("workflow_participants")
    op.drop_index("ix_workflows_status_trigger_type", table_name="workflows")
    op.drop_index("ix_workflows_name", table_name="workflows")
    op.drop_table("workflows")

    bind = op.get_bind()
    participant_status_enum.drop(bind, checkfirst=True)
    workflow_trigger_type_enum.drop(bind, checkfirst=True)
    workflow_status_enum.drop(bind, checkfirst=True)
