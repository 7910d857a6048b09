"""SQLModel ORM tables for scheduler storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class GoalRow(SQLModel, table=True):
    __tablename__ = "goals"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_goals_status_priority", "status", "priority", "created_at"),)

    goal_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = Field(default=50)
    success_criteria_json: str | None = Field(default=None, sa_column=Column(Text))
    budget_tokens: int | None = None
    budget_time_seconds: float | None = None
    budget_cost_usd: float | None = None
    spent_tokens: int = 0
    spent_time_seconds: float = 0.0
    spent_cost_usd: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemRow(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_items_goal_status", "goal_id", "status"),)

    work_item_id: str = Field(primary_key=True)
    goal_id: str = Field(
        sa_column=Column(
            ForeignKey("goals.goal_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    item_type: str
    estimated_effort: str
    estimated_tokens: int
    estimated_cost_usd: float = 0.0
    status: str = Field(index=True)
    priority: int = Field(default=50)
    dependencies_json: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = 0
    max_retries: int = 3
    attempted_strategies_json: str | None = Field(default=None, sa_column=Column(Text))
    next_strategy: str | None = None
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    last_error_category: str | None = None
    verification_status: str = "pending"
    skipped: bool = False
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunRow(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("work_item_id", "run_sequence", name="uq_runs_work_item_sequence"),
        Index(
            "uq_runs_work_item_running",
            "work_item_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    run_id: str = Field(primary_key=True)
    work_item_id: str = Field(
        sa_column=Column(
            ForeignKey("work_items.work_item_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    goal_id: str = Field(
        sa_column=Column(
            ForeignKey("goals.goal_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    run_sequence: int
    model: str
    strategy: str
    status: str = Field(index=True)
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    artifacts_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_category: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class EscalationRow(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_escalations_goal_status", "goal_id", "status"),)

    escalation_id: str = Field(primary_key=True)
    goal_id: str = Field(
        sa_column=Column(
            ForeignKey("goals.goal_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    work_item_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("work_items.work_item_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    run_id: str | None = None
    escalation_type: str = Field(index=True)
    severity: str
    status: str = Field(index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    resolution_action: str | None = None
    resolution_data_json: str | None = Field(default=None, sa_column=Column(Text))
    resolver: str | None = None
    dismiss_reason: str | None = Field(default=None, sa_column=Column(Text))
    resolution_applied: bool = False
    acknowledged_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    acknowledged_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class UsageLedgerRow(SQLModel, table=True):
    __tablename__ = "usage_ledger"  # type: ignore[bad-override]

    run_id: str = Field(
        sa_column=Column(
            ForeignKey("runs.run_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    goal_id: str = Field(
        sa_column=Column(
            ForeignKey("goals.goal_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tokens: int
    time_seconds: float
    cost_usd: float
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SchedulerEventRow(SQLModel, table=True):
    __tablename__ = "scheduler_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_scheduler_events_goal_time", "goal_id", "created_at"),
        Index("idx_scheduler_events_entity_time", "entity_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    goal_id: str | None = None
    entity_type: str
    entity_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
