"""Scheduler baseline schema: goals, work items, runs, escalations, usage ledger, events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "goals",
        sa.Column("goal_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("success_criteria_json", sa.Text(), nullable=True),
        sa.Column("budget_tokens", sa.Integer(), nullable=True),
        sa.Column("budget_time_seconds", sa.Float(), nullable=True),
        sa.Column("budget_cost_usd", sa.Float(), nullable=True),
        sa.Column("spent_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_time_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("spent_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("goal_id"),
    )
    op.create_index("ix_goals_status", "goals", ["status"], unique=False)
    op.create_index(
        "idx_goals_status_priority",
        "goals",
        ["status", "priority", "created_at"],
        unique=False,
    )

    op.create_table(
        "work_items",
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("goal_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("item_type", sa.String(), nullable=False),
        sa.Column("estimated_effort", sa.String(), nullable=False),
        sa.Column("estimated_tokens", sa.Integer(), nullable=False),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("dependencies_json", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("attempted_strategies_json", sa.Text(), nullable=True),
        sa.Column("next_strategy", sa.String(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_category", sa.String(), nullable=True),
        sa.Column(
            "verification_status",
            sa.String(),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("skipped", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["goal_id"], ["goals.goal_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("work_item_id"),
    )
    op.create_index("ix_work_items_goal_id", "work_items", ["goal_id"], unique=False)
    op.create_index("ix_work_items_status", "work_items", ["status"], unique=False)
    op.create_index(
        "idx_work_items_goal_status",
        "work_items",
        ["goal_id", "status"],
        unique=False,
    )

    op.create_table(
        "runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("goal_id", sa.String(), nullable=False),
        sa.Column("run_sequence", sa.Integer(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("strategy", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("tokens_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("time_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("artifacts_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["work_item_id"],
            ["work_items.work_item_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["goal_id"], ["goals.goal_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
        sa.UniqueConstraint(
            "work_item_id",
            "run_sequence",
            name="uq_runs_work_item_sequence",
        ),
    )
    op.create_index("ix_runs_work_item_id", "runs", ["work_item_id"], unique=False)
    op.create_index("ix_runs_goal_id", "runs", ["goal_id"], unique=False)
    op.create_index("ix_runs_status", "runs", ["status"], unique=False)
    op.create_index(
        "uq_runs_work_item_running",
        "runs",
        ["work_item_id"],
        unique=True,
        sqlite_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("goal_id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=True),
        sa.Column("run_id", sa.String(), nullable=True),
        sa.Column("escalation_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("context_json", sa.Text(), nullable=True),
        sa.Column("resolution_action", sa.String(), nullable=True),
        sa.Column("resolution_data_json", sa.Text(), nullable=True),
        sa.Column("resolver", sa.String(), nullable=True),
        sa.Column("dismiss_reason", sa.Text(), nullable=True),
        sa.Column(
            "resolution_applied",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["goal_id"], ["goals.goal_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["work_item_id"],
            ["work_items.work_item_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index("ix_escalations_goal_id", "escalations", ["goal_id"], unique=False)
    op.create_index(
        "ix_escalations_work_item_id",
        "escalations",
        ["work_item_id"],
        unique=False,
    )
    op.create_index(
        "ix_escalations_escalation_type",
        "escalations",
        ["escalation_type"],
        unique=False,
    )
    op.create_index("ix_escalations_status", "escalations", ["status"], unique=False)
    op.create_index(
        "idx_escalations_goal_status",
        "escalations",
        ["goal_id", "status"],
        unique=False,
    )

    op.create_table(
        "usage_ledger",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("goal_id", sa.String(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("time_seconds", sa.Float(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["runs.run_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["goal_id"], ["goals.goal_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_usage_ledger_goal_id", "usage_ledger", ["goal_id"], unique=False)

    op.create_table(
        "scheduler_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("goal_id", sa.String(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scheduler_events_event_type",
        "scheduler_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_scheduler_events_goal_time",
        "scheduler_events",
        ["goal_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_scheduler_events_entity_time",
        "scheduler_events",
        ["entity_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_scheduler_events_entity_time", table_name="scheduler_events")
    op.drop_index("idx_scheduler_events_goal_time", table_name="scheduler_events")
    op.drop_index("ix_scheduler_events_event_type", table_name="scheduler_events")
    op.drop_table("scheduler_events")
    op.drop_index("ix_usage_ledger_goal_id", table_name="usage_ledger")
    op.drop_table("usage_ledger")
    op.drop_index("idx_escalations_goal_status", table_name="escalations")
    op.drop_index("ix_escalations_status", table_name="escalations")
    op.drop_index("ix_escalations_escalation_type", table_name="escalations")
    op.drop_index("ix_escalations_work_item_id", table_name="escalations")
    op.drop_index("ix_escalations_goal_id", table_name="escalations")
    op.drop_table("escalations")
    op.drop_index("uq_runs_work_item_running", table_name="runs")
    op.drop_index("ix_runs_status", table_name="runs")
    op.drop_index("ix_runs_goal_id", table_name="runs")
    op.drop_index("ix_runs_work_item_id", table_name="runs")
    op.drop_table("runs")
    op.drop_index("idx_work_items_goal_status", table_name="work_items")
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_index("ix_work_items_goal_id", table_name="work_items")
    op.drop_table("work_items")
    op.drop_index("idx_goals_status_priority", table_name="goals")
    op.drop_index("ix_goals_status", table_name="goals")
    op.drop_table("goals")
