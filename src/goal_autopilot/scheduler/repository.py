"""Repository contract and SQLModel-backed persistence for scheduler state."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from goal_autopilot.scheduler.lifecycle import require_transition
from goal_autopilot.scheduler.models import (
    DEFAULT_ESTIMATED_TOKENS,
    EffortEstimate,
    Escalation,
    EscalationCreate,
    EscalationSeverity,
    EscalationStatus,
    EscalationType,
    FailureCategory,
    Goal,
    GoalCreate,
    GoalStatus,
    ResolutionAction,
    RetryStrategy,
    Run,
    RunCompletion,
    RunStatus,
    SchedulerEventView,
    SuccessCriterion,
    VerificationStatus,
    WorkItem,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemType,
)
from goal_autopilot.storage.alembic_runner import upgrade_head
from goal_autopilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from goal_autopilot.storage.sqlmodel_models import (
    EscalationRow,
    GoalRow,
    RunRow,
    SchedulerEventRow,
    UsageLedgerRow,
    WorkItemRow,
)


class NotFoundError(RuntimeError):
    """Referenced entity does not exist."""


class SchedulerRepository(Protocol):
    """Storage contract the scheduler depends on.

    Status updates are compare-and-swap: they return False when the stored
    status no longer equals ``expected``.
    """

    def get_goal(self, goal_id: str) -> Goal | None: ...

    def list_schedulable_goals(self, *, limit: int) -> list[Goal]: ...

    def update_goal_status(
        self,
        *,
        goal_id: str,
        expected: GoalStatus,
        status: GoalStatus,
        details: dict[str, object] | None = None,
    ) -> bool: ...

    def update_goal_budget(
        self,
        *,
        goal_id: str,
        budget_tokens: int | None = None,
        budget_time_seconds: float | None = None,
        budget_cost_usd: float | None = None,
    ) -> Goal: ...

    def get_work_item(self, work_item_id: str) -> WorkItem | None: ...

    def get_work_items_for_goal(self, goal_id: str) -> list[WorkItem]: ...

    def list_work_items(self, *, statuses: Iterable[WorkItemStatus]) -> list[WorkItem]: ...

    def update_work_item_status(
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        status: WorkItemStatus,
        verification_status: VerificationStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> bool: ...

    def record_work_item_failure(
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        error: str,
        category: FailureCategory,
    ) -> WorkItem | None: ...

    def schedule_work_item_retry(
        self,
        *,
        work_item_id: str,
        strategy: RetryStrategy,
        run_after: datetime,
        details: dict[str, object] | None = None,
    ) -> bool: ...

    def requeue_work_item(  # noqa: PLR0913
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        status: WorkItemStatus,
        reset_retries: bool = False,
        next_strategy: RetryStrategy | None = None,
        description: str | None = None,
        estimated_tokens: int | None = None,
        estimated_cost_usd: float | None = None,
        reason: str = "retry",
    ) -> bool: ...

    def mark_work_item_skipped(self, *, work_item_id: str, actor: str) -> bool: ...

    def list_due_retries(self, *, now: datetime) -> list[WorkItem]: ...

    def create_run(
        self,
        *,
        work_item_id: str,
        model: str,
        strategy: RetryStrategy,
    ) -> Run: ...

    def complete_run(self, *, run_id: str, completion: RunCompletion) -> bool: ...

    def get_run(self, run_id: str) -> Run | None: ...

    def get_runs_by_work_item(self, work_item_id: str) -> list[Run]: ...

    def list_running_runs(self) -> list[Run]: ...

    def record_usage(
        self,
        *,
        goal_id: str,
        run_id: str,
        tokens: int,
        time_seconds: float,
        cost_usd: float,
    ) -> bool: ...

    def create_escalation(self, payload: EscalationCreate) -> Escalation: ...

    def get_escalation(self, escalation_id: str) -> Escalation | None: ...

    def list_escalations(
        self,
        *,
        goal_id: str | None = None,
        statuses: Iterable[EscalationStatus] | None = None,
        escalation_type: EscalationType | None = None,
        limit: int = 100,
    ) -> list[Escalation]: ...

    def update_escalation(  # noqa: PLR0913
        self,
        *,
        escalation_id: str,
        expected: EscalationStatus,
        status: EscalationStatus,
        actor: str,
        resolution_action: ResolutionAction | None = None,
        resolution_data: dict[str, Any] | None = None,
        dismiss_reason: str | None = None,
    ) -> bool: ...

    def list_unapplied_resolutions(self, *, goal_id: str) -> list[Escalation]: ...

    def mark_resolution_applied(self, *, escalation_id: str) -> bool: ...

    def add_event(  # noqa: PLR0913
        self,
        *,
        goal_id: str | None,
        entity_type: str,
        entity_id: str,
        event_type: str,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None: ...


class SqlSchedulerRepository:
    """Scheduler persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> bool:
        """Migrate to head; False when the schema was already current."""

        return upgrade_head(self.db_path, engine=self.engine)

    # -- goals ---------------------------------------------------------------

    def create_goal(self, payload: GoalCreate) -> Goal:
        now = utc_now()
        goal_id = payload.goal_id or str(uuid4())
        with Session(self.engine) as session:
            row = GoalRow(
                goal_id=goal_id,
                title=payload.title,
                description=payload.description,
                status=GoalStatus.QUEUED.value,
                priority=payload.priority,
                success_criteria_json=_dumps(
                    [
                        {"description": item.description, "verified": item.verified}
                        for item in payload.success_criteria
                    ],
                ),
                budget_tokens=payload.budget_tokens,
                budget_time_seconds=payload.budget_time_seconds,
                budget_cost_usd=payload.budget_cost_usd,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                goal_id=goal_id,
                entity_type="goal",
                entity_id=goal_id,
                event_type="created",
                status_from=None,
                status_to=GoalStatus.QUEUED.value,
                details={
                    "priority": payload.priority,
                    "budget_tokens": payload.budget_tokens,
                    "budget_time_seconds": payload.budget_time_seconds,
                    "budget_cost_usd": payload.budget_cost_usd,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_goal(row)

    def get_goal(self, goal_id: str) -> Goal | None:
        with Session(self.engine) as session:
            row = session.get(GoalRow, goal_id)
            return _to_goal(row) if row is not None else None

    def list_goals(
        self,
        *,
        statuses: Iterable[GoalStatus] | None = None,
        limit: int = 50,
    ) -> list[Goal]:
        with Session(self.engine) as session:
            statement = select(GoalRow).order_by(col(GoalRow.created_at).desc()).limit(limit)
            if statuses is not None:
                statement = statement.where(
                    col(GoalRow.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_goal(row) for row in rows]

    def list_schedulable_goals(self, *, limit: int) -> list[Goal]:
        """Active and blocked goals, highest priority first, then oldest."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GoalRow)
                .where(
                    col(GoalRow.status).in_(
                        [GoalStatus.ACTIVE.value, GoalStatus.BLOCKED.value],
                    ),
                )
                .order_by(col(GoalRow.priority).desc(), col(GoalRow.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_goal(row) for row in rows]

    def update_goal_status(
        self,
        *,
        goal_id: str,
        expected: GoalStatus,
        status: GoalStatus,
        details: dict[str, object] | None = None,
    ) -> bool:
        require_transition(expected, status)
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GoalRow)
                .where(col(GoalRow.goal_id) == goal_id, col(GoalRow.status) == expected.value)
                .values(status=status.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                goal_id=goal_id,
                entity_type="goal",
                entity_id=goal_id,
                event_type="status_changed",
                status_from=expected.value,
                status_to=status.value,
                details=details or {},
            )
            session.commit()
            return True

    def update_goal_budget(
        self,
        *,
        goal_id: str,
        budget_tokens: int | None = None,
        budget_time_seconds: float | None = None,
        budget_cost_usd: float | None = None,
    ) -> Goal:
        changes: dict[str, object] = {}
        if budget_tokens is not None:
            changes["budget_tokens"] = budget_tokens
        if budget_time_seconds is not None:
            changes["budget_time_seconds"] = budget_time_seconds
        if budget_cost_usd is not None:
            changes["budget_cost_usd"] = budget_cost_usd
        with Session(self.engine) as session:
            row = session.get(GoalRow, goal_id)
            if row is None:
                raise NotFoundError(f"Goal not found: {goal_id}")
            if not changes:
                return _to_goal(row)
            for name, value in changes.items():
                setattr(row, name, value)
            row.updated_at = utc_now()
            session.add(row)
            self._add_event(
                session=session,
                goal_id=goal_id,
                entity_type="goal",
                entity_id=goal_id,
                event_type="budget_updated",
                status_from=None,
                status_to=None,
                details=changes,
            )
            session.commit()
            session.refresh(row)
            return _to_goal(row)

    # -- work items ------------------------------------------------------------

    def create_work_item(self, payload: WorkItemCreate) -> WorkItem:
        now = utc_now()
        work_item_id = payload.work_item_id or str(uuid4())
        estimated_tokens = (
            payload.estimated_tokens
            if payload.estimated_tokens is not None
            else DEFAULT_ESTIMATED_TOKENS[payload.estimated_effort]
        )
        with Session(self.engine) as session:
            goal = session.get(GoalRow, payload.goal_id)
            if goal is None:
                raise NotFoundError(f"Goal not found: {payload.goal_id}")
            if payload.dependencies:
                siblings = set(
                    session.exec(
                        select(WorkItemRow.work_item_id).where(
                            WorkItemRow.goal_id == payload.goal_id,
                            col(WorkItemRow.work_item_id).in_(list(payload.dependencies)),
                        ),
                    ).all(),
                )
                missing = [item for item in payload.dependencies if item not in siblings]
                if missing:
                    raise ValueError(
                        f"Unknown dependencies for goal {payload.goal_id}: {', '.join(missing)}",
                    )
            row = WorkItemRow(
                work_item_id=work_item_id,
                goal_id=payload.goal_id,
                title=payload.title,
                description=payload.description,
                item_type=payload.item_type.value,
                estimated_effort=payload.estimated_effort.value,
                estimated_tokens=estimated_tokens,
                estimated_cost_usd=payload.estimated_cost_usd,
                status=WorkItemStatus.QUEUED.value,
                priority=payload.priority,
                dependencies_json=_dumps(list(payload.dependencies)),
                max_retries=payload.max_retries,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                goal_id=payload.goal_id,
                entity_type="work_item",
                entity_id=work_item_id,
                event_type="created",
                status_from=None,
                status_to=WorkItemStatus.QUEUED.value,
                details={
                    "item_type": payload.item_type.value,
                    "estimated_effort": payload.estimated_effort.value,
                    "estimated_tokens": estimated_tokens,
                    "dependencies": list(payload.dependencies),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_work_item(row)

    def get_work_item(self, work_item_id: str) -> WorkItem | None:
        with Session(self.engine) as session:
            row = session.get(WorkItemRow, work_item_id)
            return _to_work_item(row) if row is not None else None

    def get_work_items_for_goal(self, goal_id: str) -> list[WorkItem]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow)
                .where(WorkItemRow.goal_id == goal_id)
                .order_by(col(WorkItemRow.priority).desc(), col(WorkItemRow.created_at).asc()),
            ).all()
        return [_to_work_item(row) for row in rows]

    def list_work_items(self, *, statuses: Iterable[WorkItemStatus]) -> list[WorkItem]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow)
                .where(col(WorkItemRow.status).in_([status.value for status in statuses]))
                .order_by(col(WorkItemRow.created_at).asc()),
            ).all()
        return [_to_work_item(row) for row in rows]

    def update_work_item_status(
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        status: WorkItemStatus,
        verification_status: VerificationStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        require_transition(expected, status)
        values: dict[str, object] = {
            "status": status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        if verification_status is not None:
            values["verification_status"] = verification_status.value
        return self._cas_work_item(
            work_item_id=work_item_id,
            expected=expected,
            status=status,
            values=values,
            event_type="status_changed",
            details=details or {},
        )

    def record_work_item_failure(
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        error: str,
        category: FailureCategory,
    ) -> WorkItem | None:
        """Move to ``failed`` and count the attempt; None if the status moved on."""

        require_transition(expected, WorkItemStatus.FAILED)
        updated = self._cas_work_item(
            work_item_id=work_item_id,
            expected=expected,
            status=WorkItemStatus.FAILED,
            values={
                "status": WorkItemStatus.FAILED.value,
                "retry_count": col(WorkItemRow.retry_count) + 1,
                "last_error": error,
                "last_error_category": category.value,
                "next_retry_at": None,
                "updated_at": to_db_datetime(utc_now()),
            },
            event_type="failed",
            details={"error": error, "category": category.value},
        )
        if not updated:
            return None
        return self.get_work_item(work_item_id)

    def schedule_work_item_retry(
        self,
        *,
        work_item_id: str,
        strategy: RetryStrategy,
        run_after: datetime,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Arm a failed work item for re-queue once ``run_after`` passes."""

        with Session(self.engine) as session:
            row = session.get(WorkItemRow, work_item_id)
            if row is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            attempted = [*_loads_list(row.attempted_strategies_json), strategy.value]
            result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.work_item_id) == work_item_id,
                    col(WorkItemRow.status) == WorkItemStatus.FAILED.value,
                )
                .values(
                    next_retry_at=to_db_datetime(run_after),
                    next_strategy=strategy.value,
                    attempted_strategies_json=_dumps(attempted),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                goal_id=row.goal_id,
                entity_type="work_item",
                entity_id=work_item_id,
                event_type="retry_scheduled",
                status_from=WorkItemStatus.FAILED.value,
                status_to=WorkItemStatus.FAILED.value,
                details={
                    "run_after": to_utc_aware_datetime(run_after).isoformat(),
                    "strategy": strategy.value,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def requeue_work_item(  # noqa: PLR0913
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        status: WorkItemStatus,
        reset_retries: bool = False,
        next_strategy: RetryStrategy | None = None,
        description: str | None = None,
        estimated_tokens: int | None = None,
        estimated_cost_usd: float | None = None,
        reason: str = "retry",
    ) -> bool:
        """Move a failed/blocked work item back to ``ready`` (or ``blocked``)."""

        require_transition(expected, status)
        values: dict[str, object] = {
            "status": status.value,
            "next_retry_at": None,
            "updated_at": to_db_datetime(utc_now()),
        }
        if next_strategy is not None:
            values["next_strategy"] = next_strategy.value
        if reset_retries:
            values["retry_count"] = 0
            values["attempted_strategies_json"] = None
            values["next_strategy"] = next_strategy.value if next_strategy is not None else None
        if description is not None:
            values["description"] = description
        if estimated_tokens is not None:
            values["estimated_tokens"] = estimated_tokens
        if estimated_cost_usd is not None:
            values["estimated_cost_usd"] = estimated_cost_usd
        return self._cas_work_item(
            work_item_id=work_item_id,
            expected=expected,
            status=status,
            values=values,
            event_type="requeued",
            details={
                "reason": reason,
                "reset_retries": reset_retries,
                "next_strategy": next_strategy.value if next_strategy is not None else None,
            },
        )

    def mark_work_item_skipped(self, *, work_item_id: str, actor: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(WorkItemRow, work_item_id)
            if row is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            if row.skipped:
                return False
            row.skipped = True
            row.next_retry_at = None
            row.updated_at = utc_now()
            session.add(row)
            self._add_event(
                session=session,
                goal_id=row.goal_id,
                entity_type="work_item",
                entity_id=work_item_id,
                event_type="skipped",
                status_from=row.status,
                status_to=row.status,
                details={"actor": actor},
            )
            session.commit()
            return True

    def list_due_retries(self, *, now: datetime) -> list[WorkItem]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemRow)
                .where(
                    WorkItemRow.status == WorkItemStatus.FAILED.value,
                    col(WorkItemRow.next_retry_at).is_not(None),
                    col(WorkItemRow.next_retry_at) <= to_db_datetime(now),
                    col(WorkItemRow.skipped).is_(False),
                )
                .order_by(col(WorkItemRow.next_retry_at).asc()),
            ).all()
        return [_to_work_item(row) for row in rows]

    # -- runs --------------------------------------------------------------------

    def create_run(
        self,
        *,
        work_item_id: str,
        model: str,
        strategy: RetryStrategy,
    ) -> Run:
        """Open a new run; fails if one is still outstanding for the work item."""

        now = utc_now()
        run_id = str(uuid4())
        with Session(self.engine) as session:
            work_item = session.get(WorkItemRow, work_item_id)
            if work_item is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            last_sequence = session.exec(
                select(func.max(RunRow.run_sequence)).where(RunRow.work_item_id == work_item_id),
            ).one()
            row = RunRow(
                run_id=run_id,
                work_item_id=work_item_id,
                goal_id=work_item.goal_id,
                run_sequence=(last_sequence or 0) + 1,
                model=model,
                strategy=strategy.value,
                status=RunStatus.RUNNING.value,
                created_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                goal_id=work_item.goal_id,
                entity_type="run",
                entity_id=run_id,
                event_type="started",
                status_from=None,
                status_to=RunStatus.RUNNING.value,
                details={
                    "work_item_id": work_item_id,
                    "model": model,
                    "strategy": strategy.value,
                    "run_sequence": row.run_sequence,
                },
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise RuntimeError(
                    f"Work item {work_item_id} already has an outstanding run.",
                ) from error
            session.refresh(row)
            return _to_run(row)

    def complete_run(self, *, run_id: str, completion: RunCompletion) -> bool:
        """Write the terminal envelope; False if the run was already completed."""

        require_transition(RunStatus.RUNNING, completion.status)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(RunRow, run_id)
            if row is None:
                raise NotFoundError(f"Run not found: {run_id}")
            result = session.exec(
                sa_update(RunRow)
                .where(
                    col(RunRow.run_id) == run_id,
                    col(RunRow.status) == RunStatus.RUNNING.value,
                )
                .values(
                    status=completion.status.value,
                    tokens_used=completion.tokens_used,
                    cost_usd=completion.cost_usd,
                    time_seconds=completion.time_seconds,
                    artifacts_json=_dumps(completion.artifacts),
                    error_message=completion.error_message,
                    error_category=(
                        completion.error_category.value
                        if completion.error_category is not None
                        else None
                    ),
                    completed_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                goal_id=row.goal_id,
                entity_type="run",
                entity_id=run_id,
                event_type="completed",
                status_from=RunStatus.RUNNING.value,
                status_to=completion.status.value,
                details={
                    "tokens_used": completion.tokens_used,
                    "cost_usd": completion.cost_usd,
                    "time_seconds": completion.time_seconds,
                    "error_message": completion.error_message,
                },
            )
            session.commit()
            return True

    def get_run(self, run_id: str) -> Run | None:
        with Session(self.engine) as session:
            row = session.get(RunRow, run_id)
            return _to_run(row) if row is not None else None

    def get_runs_by_work_item(self, work_item_id: str) -> list[Run]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunRow)
                .where(RunRow.work_item_id == work_item_id)
                .order_by(col(RunRow.run_sequence).asc()),
            ).all()
        return [_to_run(row) for row in rows]

    def list_running_runs(self) -> list[Run]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunRow)
                .where(RunRow.status == RunStatus.RUNNING.value)
                .order_by(col(RunRow.created_at).asc()),
            ).all()
        return [_to_run(row) for row in rows]

    # -- usage -------------------------------------------------------------------

    def record_usage(
        self,
        *,
        goal_id: str,
        run_id: str,
        tokens: int,
        time_seconds: float,
        cost_usd: float,
    ) -> bool:
        """Append run usage to the ledger and goal spend once per run id."""

        with Session(self.engine) as session:
            if session.get(UsageLedgerRow, run_id) is not None:
                return False
            session.add(
                UsageLedgerRow(
                    run_id=run_id,
                    goal_id=goal_id,
                    tokens=tokens,
                    time_seconds=time_seconds,
                    cost_usd=cost_usd,
                    recorded_at=utc_now(),
                ),
            )
            result = session.exec(
                sa_update(GoalRow)
                .where(col(GoalRow.goal_id) == goal_id)
                .values(
                    spent_tokens=col(GoalRow.spent_tokens) + tokens,
                    spent_time_seconds=col(GoalRow.spent_time_seconds) + time_seconds,
                    spent_cost_usd=col(GoalRow.spent_cost_usd) + cost_usd,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"Goal not found: {goal_id}")
            self._add_event(
                session=session,
                goal_id=goal_id,
                entity_type="run",
                entity_id=run_id,
                event_type="usage_recorded",
                status_from=None,
                status_to=None,
                details={
                    "tokens": tokens,
                    "time_seconds": time_seconds,
                    "cost_usd": cost_usd,
                },
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    # -- escalations -----------------------------------------------------------

    def create_escalation(self, payload: EscalationCreate) -> Escalation:
        now = utc_now()
        escalation_id = str(uuid4())
        with Session(self.engine) as session:
            row = EscalationRow(
                escalation_id=escalation_id,
                goal_id=payload.goal_id,
                work_item_id=payload.work_item_id,
                run_id=payload.run_id,
                escalation_type=payload.escalation_type.value,
                severity=payload.severity.value,
                status=EscalationStatus.OPEN.value,
                title=payload.title,
                description=payload.description,
                context_json=_dumps(payload.context) if payload.context else None,
                created_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                goal_id=payload.goal_id,
                entity_type="escalation",
                entity_id=escalation_id,
                event_type="created",
                status_from=None,
                status_to=EscalationStatus.OPEN.value,
                details={
                    "type": payload.escalation_type.value,
                    "severity": payload.severity.value,
                    "work_item_id": payload.work_item_id,
                    "run_id": payload.run_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_escalation(row)

    def get_escalation(self, escalation_id: str) -> Escalation | None:
        with Session(self.engine) as session:
            row = session.get(EscalationRow, escalation_id)
            return _to_escalation(row) if row is not None else None

    def list_escalations(
        self,
        *,
        goal_id: str | None = None,
        statuses: Iterable[EscalationStatus] | None = None,
        escalation_type: EscalationType | None = None,
        limit: int = 100,
    ) -> list[Escalation]:
        with Session(self.engine) as session:
            statement = (
                select(EscalationRow).order_by(col(EscalationRow.created_at).desc()).limit(limit)
            )
            if goal_id is not None:
                statement = statement.where(EscalationRow.goal_id == goal_id)
            if statuses is not None:
                statement = statement.where(
                    col(EscalationRow.status).in_([status.value for status in statuses]),
                )
            if escalation_type is not None:
                statement = statement.where(
                    EscalationRow.escalation_type == escalation_type.value,
                )
            rows = session.exec(statement).all()
        return [_to_escalation(row) for row in rows]

    def update_escalation(  # noqa: PLR0913
        self,
        *,
        escalation_id: str,
        expected: EscalationStatus,
        status: EscalationStatus,
        actor: str,
        resolution_action: ResolutionAction | None = None,
        resolution_data: dict[str, Any] | None = None,
        dismiss_reason: str | None = None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        values: dict[str, object] = {"status": status.value}
        if status == EscalationStatus.ACKNOWLEDGED:
            values.update(acknowledged_at=now, acknowledged_by=actor)
        else:
            values.update(resolved_at=now, resolver=actor)
        if resolution_action is not None:
            values["resolution_action"] = resolution_action.value
            values["resolution_data_json"] = _dumps(resolution_data or {})
        if dismiss_reason is not None:
            values["dismiss_reason"] = dismiss_reason
        with Session(self.engine) as session:
            row = session.get(EscalationRow, escalation_id)
            if row is None:
                raise NotFoundError(f"Escalation not found: {escalation_id}")
            result = session.exec(
                sa_update(EscalationRow)
                .where(
                    col(EscalationRow.escalation_id) == escalation_id,
                    col(EscalationRow.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                goal_id=row.goal_id,
                entity_type="escalation",
                entity_id=escalation_id,
                event_type=status.value,
                status_from=expected.value,
                status_to=status.value,
                details={
                    "actor": actor,
                    "action": resolution_action.value if resolution_action else None,
                    "reason": dismiss_reason,
                },
            )
            session.commit()
            return True

    def list_unapplied_resolutions(self, *, goal_id: str) -> list[Escalation]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EscalationRow)
                .where(
                    EscalationRow.goal_id == goal_id,
                    EscalationRow.status == EscalationStatus.RESOLVED.value,
                    col(EscalationRow.resolution_applied).is_(False),
                )
                .order_by(col(EscalationRow.resolved_at).asc()),
            ).all()
        return [_to_escalation(row) for row in rows]

    def mark_resolution_applied(self, *, escalation_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(EscalationRow)
                .where(
                    col(EscalationRow.escalation_id) == escalation_id,
                    col(EscalationRow.resolution_applied).is_(False),
                )
                .values(resolution_applied=True),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- audit trail -------------------------------------------------------------

    def add_event(  # noqa: PLR0913
        self,
        *,
        goal_id: str | None,
        entity_type: str,
        entity_id: str,
        event_type: str,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                goal_id=goal_id,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details or {},
            )
            session.commit()

    def list_events(
        self,
        *,
        goal_id: str | None = None,
        entity_id: str | None = None,
        limit: int = 200,
    ) -> list[SchedulerEventView]:
        with Session(self.engine) as session:
            statement = (
                select(SchedulerEventRow)
                .order_by(col(SchedulerEventRow.created_at).asc(), col(SchedulerEventRow.id).asc())
                .limit(limit)
            )
            if goal_id is not None:
                statement = statement.where(SchedulerEventRow.goal_id == goal_id)
            if entity_id is not None:
                statement = statement.where(SchedulerEventRow.entity_id == entity_id)
            rows = session.exec(statement).all()
        return [
            SchedulerEventView(
                event_id=row.id or 0,
                goal_id=row.goal_id,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                event_type=row.event_type,
                status_from=row.status_from,
                status_to=row.status_to,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_loads_dict(row.details_json),
            )
            for row in rows
        ]

    def _cas_work_item(  # noqa: PLR0913
        self,
        *,
        work_item_id: str,
        expected: WorkItemStatus,
        status: WorkItemStatus,
        values: dict[str, object],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            row = session.get(WorkItemRow, work_item_id)
            if row is None:
                raise NotFoundError(f"Work item not found: {work_item_id}")
            result = session.exec(
                sa_update(WorkItemRow)
                .where(
                    col(WorkItemRow.work_item_id) == work_item_id,
                    col(WorkItemRow.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                goal_id=row.goal_id,
                entity_type="work_item",
                entity_id=work_item_id,
                event_type=event_type,
                status_from=expected.value,
                status_to=status.value,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        goal_id: str | None,
        entity_type: str,
        entity_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            SchedulerEventRow(
                goal_id=goal_id,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _dumps(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _loads_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, list) else []


def _loads_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_goal(row: GoalRow) -> Goal:
    return Goal(
        goal_id=row.goal_id,
        title=row.title,
        description=row.description,
        status=GoalStatus(row.status),
        priority=row.priority,
        success_criteria=[
            SuccessCriterion(
                description=str(item.get("description", "")),
                verified=bool(item.get("verified", False)),
            )
            for item in _loads_list(row.success_criteria_json)
            if isinstance(item, dict)
        ],
        budget_tokens=row.budget_tokens,
        budget_time_seconds=row.budget_time_seconds,
        budget_cost_usd=row.budget_cost_usd,
        spent_tokens=row.spent_tokens,
        spent_time_seconds=row.spent_time_seconds,
        spent_cost_usd=row.spent_cost_usd,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_work_item(row: WorkItemRow) -> WorkItem:
    return WorkItem(
        work_item_id=row.work_item_id,
        goal_id=row.goal_id,
        title=row.title,
        description=row.description,
        item_type=WorkItemType(row.item_type),
        estimated_effort=EffortEstimate(row.estimated_effort),
        estimated_tokens=row.estimated_tokens,
        estimated_cost_usd=row.estimated_cost_usd,
        status=WorkItemStatus(row.status),
        priority=row.priority,
        dependencies=tuple(str(item) for item in _loads_list(row.dependencies_json)),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        attempted_strategies=tuple(
            RetryStrategy(item) for item in _loads_list(row.attempted_strategies_json)
        ),
        next_strategy=RetryStrategy(row.next_strategy) if row.next_strategy else None,
        next_retry_at=_optional_datetime(row.next_retry_at),
        last_error=row.last_error,
        last_error_category=(
            FailureCategory(row.last_error_category) if row.last_error_category else None
        ),
        verification_status=VerificationStatus(row.verification_status),
        skipped=row.skipped,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run(row: RunRow) -> Run:
    return Run(
        run_id=row.run_id,
        work_item_id=row.work_item_id,
        goal_id=row.goal_id,
        run_sequence=row.run_sequence,
        model=row.model,
        strategy=RetryStrategy(row.strategy),
        status=RunStatus(row.status),
        tokens_used=row.tokens_used,
        cost_usd=row.cost_usd,
        time_seconds=row.time_seconds,
        artifacts=[str(item) for item in _loads_list(row.artifacts_json)],
        error_message=row.error_message,
        error_category=FailureCategory(row.error_category) if row.error_category else None,
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=_optional_datetime(row.completed_at),
    )


def _to_escalation(row: EscalationRow) -> Escalation:
    return Escalation(
        escalation_id=row.escalation_id,
        goal_id=row.goal_id,
        work_item_id=row.work_item_id,
        run_id=row.run_id,
        escalation_type=EscalationType(row.escalation_type),
        severity=EscalationSeverity(row.severity),
        status=EscalationStatus(row.status),
        title=row.title,
        description=row.description,
        context=_loads_dict(row.context_json),
        resolution_action=(
            ResolutionAction(row.resolution_action) if row.resolution_action else None
        ),
        resolution_data=_loads_dict(row.resolution_data_json),
        resolver=row.resolver,
        dismiss_reason=row.dismiss_reason,
        resolution_applied=row.resolution_applied,
        acknowledged_by=row.acknowledged_by,
        created_at=to_utc_aware_datetime(row.created_at),
        acknowledged_at=_optional_datetime(row.acknowledged_at),
        resolved_at=_optional_datetime(row.resolved_at),
    )
