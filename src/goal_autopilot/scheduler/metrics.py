"""Scheduler counters and the read-only snapshot exposed to status surfaces."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime

from goal_autopilot.scheduler.models import SchedulerStatus


@dataclass(slots=True)
class SchedulerSnapshot:
    """Point-in-time scheduler state."""

    status: SchedulerStatus
    active_goal_ids: list[str]
    last_tick_at: datetime | None
    error_count: int
    goals_processed: int
    work_items_completed: int
    runs_executed: int
    average_work_item_duration_seconds: float | None
    in_flight: int
    ticks: int
    skipped_ticks: int


@dataclass(slots=True)
class SchedulerMetrics:
    """Cumulative counters updated by the tick loop."""

    error_count: int = 0
    goals_processed: int = 0
    work_items_completed: int = 0
    runs_executed: int = 0
    ticks: int = 0
    skipped_ticks: int = 0
    last_tick_at: datetime | None = None
    last_tick_errors: int = 0
    active_goal_ids: list[str] = field(default_factory=list)
    _duration_total: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_tick(self, *, at: datetime, errors: int, active_goal_ids: list[str]) -> None:
        with self._lock:
            self.ticks += 1
            self.last_tick_at = at
            self.last_tick_errors = errors
            self.error_count += errors
            self.active_goal_ids = list(active_goal_ids)

    def record_skipped_tick(self) -> None:
        with self._lock:
            self.skipped_ticks += 1

    def record_error(self) -> None:
        with self._lock:
            self.error_count += 1

    def record_goal_processed(self) -> None:
        with self._lock:
            self.goals_processed += 1

    def record_run(self) -> None:
        with self._lock:
            self.runs_executed += 1

    def record_work_item_completed(self, duration_seconds: float) -> None:
        with self._lock:
            self.work_items_completed += 1
            self._duration_total += max(0.0, duration_seconds)

    def snapshot(self, *, status: SchedulerStatus, in_flight: int) -> SchedulerSnapshot:
        with self._lock:
            if status == SchedulerStatus.RUNNING and self.last_tick_errors > 0:
                status = SchedulerStatus.DEGRADED
            average = (
                self._duration_total / self.work_items_completed
                if self.work_items_completed
                else None
            )
            return SchedulerSnapshot(
                status=status,
                active_goal_ids=list(self.active_goal_ids),
                last_tick_at=self.last_tick_at,
                error_count=self.error_count,
                goals_processed=self.goals_processed,
                work_items_completed=self.work_items_completed,
                runs_executed=self.runs_executed,
                average_work_item_duration_seconds=average,
                in_flight=in_flight,
                ticks=self.ticks,
                skipped_ticks=self.skipped_ticks,
            )


def render_snapshot(snapshot: SchedulerSnapshot) -> list[str]:
    average = (
        f"{snapshot.average_work_item_duration_seconds:.2f}s"
        if snapshot.average_work_item_duration_seconds is not None
        else "n/a"
    )
    last_tick = snapshot.last_tick_at.isoformat() if snapshot.last_tick_at else "never"
    return [
        f"Scheduler status: {snapshot.status.value}",
        f"Active goals: {', '.join(snapshot.active_goal_ids) or '-'}",
        f"Last tick: {last_tick} (ticks={snapshot.ticks} skipped={snapshot.skipped_ticks})",
        f"Errors: {snapshot.error_count}",
        f"Goals processed: {snapshot.goals_processed}",
        f"Work items completed: {snapshot.work_items_completed}",
        f"Runs executed: {snapshot.runs_executed} (in flight: {snapshot.in_flight})",
        f"Average work item duration: {average}",
    ]
