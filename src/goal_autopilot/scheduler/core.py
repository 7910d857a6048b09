"""Tick-driven orchestration loop for goals, work items and runs."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from goal_autopilot.config import Settings
from goal_autopilot.scheduler.abort import TIMEOUT_REASON, AbortManager, CancellationHandle
from goal_autopilot.scheduler.backend.base import (
    ExecutionEngine,
    ExecutionOutcome,
    ExecutionRequest,
)
from goal_autopilot.scheduler.backend.cli_backend import BackendRunError
from goal_autopilot.scheduler.budget import BudgetTracker, overage_severity
from goal_autopilot.scheduler.escalation import BLOCKING_STATUSES, EscalationHandler
from goal_autopilot.scheduler.events import EventBus, EventHandler
from goal_autopilot.scheduler.lifecycle import TERMINAL_GOAL_STATUSES
from goal_autopilot.scheduler.metrics import SchedulerMetrics, SchedulerSnapshot
from goal_autopilot.scheduler.model_selection import ModelSelection, ModelSelector, TierConfig
from goal_autopilot.scheduler.models import (
    AbortScope,
    Err,
    Escalation,
    EscalationCreate,
    EscalationSeverity,
    EscalationType,
    FailureCategory,
    Goal,
    GoalStatus,
    Ok,
    ResolutionAction,
    RetryStrategy,
    RunCompletion,
    RunStatus,
    SchedulerStatus,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
)
from goal_autopilot.scheduler.repository import SchedulerRepository
from goal_autopilot.scheduler.retry import RetryHandler
from goal_autopilot.scheduler.verification import AcceptAllGate, VerificationGate
from goal_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "scheduler_shutdown"
RESTART_ERROR = "Interrupted by scheduler restart"
_MAX_COMPLETION_ATTEMPTS = 3
_GOAL_SCAN_LIMIT = 10_000
_SCHEDULABLE_GOAL_STATUSES = (GoalStatus.ACTIVE, GoalStatus.BLOCKED)
_REQUEUE_ACTIONS = {
    ResolutionAction.RETRY,
    ResolutionAction.MODIFY_AND_RETRY,
    ResolutionAction.ALTERNATIVE_APPROACH,
}


@dataclass(slots=True)
class _Dispatch:
    """Run handed to the executor and not yet folded back into storage."""

    goal_id: str
    work_item_id: str
    run_id: str
    handle: CancellationHandle
    future: Future[ExecutionOutcome]
    started_monotonic: float
    completion_attempts: int = 0


class SchedulerCore:
    """Drives goals from ``active`` to ``completed`` one tick at a time.

    Dispatches are fire-and-forget on a thread pool; each tick polls for
    finished futures instead of waiting on them. Every status change is a
    compare-and-swap through the repository, and usage is recorded once per
    run id, so re-processing a tick never double-applies anything.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SchedulerRepository,
        settings: Settings,
        engine: ExecutionEngine,
        events: EventBus | None = None,
        abort_manager: AbortManager | None = None,
        escalations: EscalationHandler | None = None,
        budget: BudgetTracker | None = None,
        retry: RetryHandler | None = None,
        model_selector: ModelSelector | None = None,
        verification_gate: VerificationGate | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.engine = engine
        self.events = events or EventBus()
        self.abort_manager = abort_manager or AbortManager(events=self.events)
        self.escalations = escalations or EscalationHandler(repository, events=self.events)
        self.budget = budget or BudgetTracker(settings=settings.budget, repository=repository)
        self.retry = retry or RetryHandler(settings=settings.retry)
        self.model_selector = model_selector or ModelSelector(
            TierConfig.from_settings(settings.models),
        )
        self.verification_gate = verification_gate or AcceptAllGate()
        self.clock = clock
        self.metrics = SchedulerMetrics()

        self._executor = ThreadPoolExecutor(
            max_workers=settings.scheduler.max_dispatch_workers,
            thread_name_prefix="goal-autopilot-run",
        )
        self._tick_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._in_flight: dict[str, _Dispatch] = {}
        self._status = SchedulerStatus.IDLE
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    # -- lifecycle -----------------------------------------------------------

    @property
    def status(self) -> SchedulerStatus:
        return self._status

    def start(self) -> int:
        """Recover state left by a previous process and mark the loop running."""

        recovered = self.recover()
        self._status = SchedulerStatus.RUNNING
        self._stop_requested = False
        logger.info("Scheduler started (recovered %d interrupted work items)", recovered)
        return recovered

    def run_loop(
        self,
        *,
        max_ticks: int | None = None,
        until_idle: bool = False,
    ) -> SchedulerSnapshot:
        """Tick on a fixed interval until stopped or ``max_ticks`` is reached.

        With ``until_idle`` the loop also ends once nothing can progress without
        a human: no runs in flight and no dispatchable or backing-off work.
        """

        if self._status == SchedulerStatus.STOPPED:
            raise RuntimeError("Scheduler was stopped; build a new instance to run again.")
        if self._status == SchedulerStatus.IDLE:
            self.start()
        ticks = 0
        with self._signal_handlers():
            try:
                while not self._stop_requested:
                    self.tick()
                    ticks += 1
                    if max_ticks is not None and ticks >= max_ticks:
                        break
                    if until_idle and self.is_idle():
                        break
                    self._sleep_with_stop(self.settings.scheduler.tick_interval_seconds)
            finally:
                self.stop()
        return self.snapshot()

    def pause(self) -> None:
        """Stop dispatching new work; finished runs are still folded in."""

        if self._status == SchedulerStatus.RUNNING:
            self._status = SchedulerStatus.PAUSED
            self.events.publish("scheduler_paused")

    def resume(self) -> None:
        if self._status == SchedulerStatus.PAUSED:
            self._status = SchedulerStatus.RUNNING
            self.events.publish("scheduler_resumed")

    def stop(self) -> None:
        """Abort in-flight runs, fold their outcomes in and release the pool."""

        if self._status == SchedulerStatus.STOPPED:
            return
        self._stop_requested = True
        for registration in self.abort_manager.active_registrations(AbortScope.WORK_ITEM):
            self.abort_manager.abort(
                AbortScope.WORK_ITEM,
                registration.scope_id,
                SHUTDOWN_REASON,
                "scheduler",
            )
        self.wait_for_in_flight(timeout=self.settings.scheduler.abort_grace_seconds)
        with self._tick_lock:
            self._process_completions(force_pending=True)
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.abort_manager.shutdown()
        self._status = SchedulerStatus.STOPPED
        self.events.publish("scheduler_stopped", signal=self._stop_signal_name)
        logger.info("Scheduler stopped")

    def wait_for_in_flight(self, timeout: float | None = None) -> bool:
        """Block until every dispatched run has returned; True if none remain pending."""

        with self._state_lock:
            futures = [dispatch.future for dispatch in self._in_flight.values()]
        if not futures:
            return True
        _, pending = wait_futures(futures, timeout=timeout)
        return not pending

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        return self.events.unsubscribe(event_type, handler)

    def snapshot(self) -> SchedulerSnapshot:
        with self._state_lock:
            in_flight = len(self._in_flight)
        return self.metrics.snapshot(status=self._status, in_flight=in_flight)

    def is_idle(self) -> bool:
        """True when no run is in flight and no goal has work it could progress."""

        with self._state_lock:
            if self._in_flight:
                return False
        for goal in self.repository.list_schedulable_goals(limit=_GOAL_SCAN_LIMIT):
            if self.escalations.has_blocking_escalations(goal.goal_id):
                continue
            work_items = self.repository.get_work_items_for_goal(goal.goal_id)
            satisfied = _satisfied_ids(work_items)
            for work_item in work_items:
                if work_item.skipped:
                    continue
                waiting = work_item.status in {WorkItemStatus.QUEUED, WorkItemStatus.READY}
                if waiting and set(work_item.dependencies) <= satisfied:
                    return False
                if work_item.status == WorkItemStatus.FAILED and work_item.next_retry_at:
                    return False
        return True

    # -- external actions ----------------------------------------------------

    def submit_goal(self, goal_id: str) -> bool:
        """Activate a queued goal so the loop starts scheduling it."""

        if not self.repository.update_goal_status(
            goal_id=goal_id,
            expected=GoalStatus.QUEUED,
            status=GoalStatus.ACTIVE,
            details={"reason": "submitted"},
        ):
            return False
        self._ensure_goal_scope(goal_id)
        self.events.publish("goal_submitted", goal_id=goal_id)
        logger.info("Goal %s submitted", goal_id)
        return True

    def cancel_goal(self, goal_id: str, *, actor: str = "human", reason: str = "cancelled") -> int:
        """Cancel a goal and cascade the abort to its in-flight work.

        Returns the number of abort scopes cancelled; 0 when the goal was
        already terminal or had nothing running.
        """

        goal = self.repository.get_goal(goal_id)
        if goal is None or goal.status in TERMINAL_GOAL_STATUSES:
            return 0
        if not self.repository.update_goal_status(
            goal_id=goal_id,
            expected=goal.status,
            status=GoalStatus.CANCELLED,
            details={"actor": actor, "reason": reason},
        ):
            return 0
        aborted = self.abort_manager.abort(AbortScope.GOAL, goal_id, reason, actor)
        for escalation in self.escalations.get_pending_escalations(goal_id):
            self.escalations.dismiss_escalation(
                escalation.escalation_id,
                reason=f"goal cancelled: {reason}",
                actor=actor,
            )
        self.events.publish("goal_cancelled", goal_id=goal_id, actor=actor, aborted=aborted)
        logger.info("Goal %s cancelled by %s (%d scopes aborted)", goal_id, actor, aborted)
        return aborted

    def abort_work_item(
        self,
        work_item_id: str,
        *,
        actor: str = "human",
        reason: str = "aborted",
    ) -> int:
        return self.abort_manager.abort(AbortScope.WORK_ITEM, work_item_id, reason, actor)

    def recover(self) -> int:
        """Close runs orphaned by a crash and send their work items through retry."""

        for run in self.repository.list_running_runs():
            self.repository.complete_run(
                run_id=run.run_id,
                completion=RunCompletion(
                    status=RunStatus.ABORTED,
                    error_message=RESTART_ERROR,
                ),
            )
        interrupted = self.repository.list_work_items(
            statuses=(WorkItemStatus.IN_PROGRESS, WorkItemStatus.VERIFY),
        )
        for work_item in interrupted:
            self._fail_work_item(
                work_item,
                expected=work_item.status,
                error=RESTART_ERROR,
                kind=None,
                run_id=None,
            )
        for goal in self.repository.list_schedulable_goals(limit=_GOAL_SCAN_LIMIT):
            self._ensure_goal_scope(goal.goal_id)
        if interrupted:
            logger.warning("Recovered %d interrupted work items", len(interrupted))
        return len(interrupted)

    # -- tick ------------------------------------------------------------------

    def tick(self) -> bool:
        """Run one scheduling pass; returns False if another tick is still running."""

        if not self._tick_lock.acquire(blocking=False):
            self.metrics.record_skipped_tick()
            logger.debug("Previous tick still running; skipping")
            return False
        try:
            errors = self._process_completions()
            self._abort_cancelled_goals()
            selected: list[str] = []
            if self._status != SchedulerStatus.PAUSED:
                errors += self._promote_due_retries()
                goals, selection_errors = self._select_goals()
                errors += selection_errors
                for goal in goals:
                    selected.append(goal.goal_id)
                    try:
                        self._process_goal(goal)
                        self.metrics.record_goal_processed()
                    except Exception:
                        errors += 1
                        logger.exception("Failed to process goal %s", goal.goal_id)
            self.metrics.record_tick(at=self.clock(), errors=errors, active_goal_ids=selected)
            self.events.publish("tick_completed", errors=errors, goals=selected)
            return True
        finally:
            self._tick_lock.release()

    def _abort_cancelled_goals(self) -> None:
        """Propagate cancellations written by another process to in-flight runs."""

        with self._state_lock:
            goal_ids = {dispatch.goal_id for dispatch in self._in_flight.values()}
        for goal_id in goal_ids:
            goal = self.repository.get_goal(goal_id)
            if goal is not None and goal.status == GoalStatus.CANCELLED:
                self.abort_manager.abort(AbortScope.GOAL, goal_id, "cancelled", "external")

    def _select_goals(self) -> tuple[list[Goal], int]:
        """Highest-priority goals not waiting on a human, up to the concurrency cap.

        Goals held by a blocking escalation do not take a slot, but resolutions
        already recorded against them are still applied.
        """

        cap = self.settings.scheduler.max_concurrent_goals
        selected: list[Goal] = []
        errors = 0
        for goal in self.repository.list_schedulable_goals(limit=_GOAL_SCAN_LIMIT):
            try:
                if self.escalations.has_blocking_escalations(goal.goal_id):
                    self._apply_resolutions(goal)
                    continue
            except Exception:
                errors += 1
                logger.exception("Failed to apply resolutions of goal %s", goal.goal_id)
                continue
            if len(selected) < cap:
                selected.append(goal)
        return selected, errors

    def _process_goal(self, goal: Goal) -> None:
        self._apply_resolutions(goal)
        current = self.repository.get_goal(goal.goal_id)
        if current is None or current.status not in _SCHEDULABLE_GOAL_STATUSES:
            return
        if self.escalations.has_blocking_escalations(current.goal_id):
            return
        if not self._budget_gate(current):
            return
        if current.status == GoalStatus.BLOCKED:
            if not self.repository.update_goal_status(
                goal_id=current.goal_id,
                expected=GoalStatus.BLOCKED,
                status=GoalStatus.ACTIVE,
                details={"reason": "unblocked"},
            ):
                return
            current.status = GoalStatus.ACTIVE
        self._ensure_goal_scope(current.goal_id)

        self._promote_ready(self.repository.get_work_items_for_goal(current.goal_id))
        work_items = self.repository.get_work_items_for_goal(current.goal_id)
        satisfied = _satisfied_ids(work_items)
        for work_item in work_items:
            if work_item.status != WorkItemStatus.READY or work_item.skipped:
                continue
            if not all(dependency in satisfied for dependency in work_item.dependencies):
                continue
            escalated = self._dispatch(current, work_item)
            if escalated:
                break
            # spend moves only through completions, but re-read so projections stay honest
            current = self.repository.get_goal(current.goal_id) or current

        self._maybe_complete_goal(current.goal_id)

    def _budget_gate(self, goal: Goal) -> bool:
        check = self.budget.check_budget(goal)
        if check.within_budget:
            return True
        overage = self.budget.projected_overage(goal, 0, 0.0)
        policy = self.settings.budget
        if policy.allow_overage and overage <= policy.max_overage_percent:
            return True
        if goal.status == GoalStatus.ACTIVE:
            self.repository.update_goal_status(
                goal_id=goal.goal_id,
                expected=GoalStatus.ACTIVE,
                status=GoalStatus.BLOCKED,
                details={"reason": "budget_exceeded"},
            )
        exceeded = ", ".join(item.dimension for item in check.violations)
        self.escalations.create_escalation(
            EscalationCreate(
                goal_id=goal.goal_id,
                escalation_type=EscalationType.RESOURCE,
                severity=overage_severity(overage) if overage > 0 else EscalationSeverity.HIGH,
                title=f"Goal budget exhausted: {exceeded}",
                description="Raise the goal budget or cancel the goal to continue.",
                context={
                    "violations": [
                        {"dimension": item.dimension, "limit": item.limit, "spent": item.spent}
                        for item in check.violations
                    ],
                },
            ),
        )
        return False

    def _promote_ready(self, work_items: list[WorkItem]) -> None:
        satisfied = _satisfied_ids(work_items)
        for work_item in work_items:
            if work_item.status != WorkItemStatus.QUEUED or work_item.skipped:
                continue
            if all(dependency in satisfied for dependency in work_item.dependencies):
                self.repository.update_work_item_status(
                    work_item_id=work_item.work_item_id,
                    expected=WorkItemStatus.QUEUED,
                    status=WorkItemStatus.READY,
                    details={"reason": "dependencies_satisfied"},
                )

    def _dispatch(self, goal: Goal, work_item: WorkItem) -> bool:
        """Start one run; returns True when an escalation now blocks the goal."""

        strategy = work_item.next_strategy or RetryStrategy.SAME_APPROACH
        selection = self.model_selector.select_model(work_item, strategy=strategy)
        projection = self.budget.project(
            goal,
            work_item.estimated_tokens,
            work_item.estimated_cost_usd,
        )
        if projection.will_exceed and not projection.allowed:
            self.repository.update_work_item_status(
                work_item_id=work_item.work_item_id,
                expected=WorkItemStatus.READY,
                status=WorkItemStatus.BLOCKED,
                details={"reason": "budget", "overage_ratio": _ratio(projection.overage_ratio)},
            )
            self._escalate_budget(goal, work_item, projection.overage_ratio, dispatched=False)
            return True

        if not self.repository.update_work_item_status(
            work_item_id=work_item.work_item_id,
            expected=WorkItemStatus.READY,
            status=WorkItemStatus.IN_PROGRESS,
            details={"model": selection.model, "strategy": strategy.value},
        ):
            return False
        try:
            run = self.repository.create_run(
                work_item_id=work_item.work_item_id,
                model=selection.model,
                strategy=strategy,
            )
        except Exception as error:
            logger.exception("Could not open a run for work item %s", work_item.work_item_id)
            self._fail_work_item(
                work_item,
                expected=WorkItemStatus.IN_PROGRESS,
                error=f"{type(error).__name__}: {error}",
                kind=None,
                run_id=None,
            )
            return False

        handle = self._register_run_scopes(goal.goal_id, work_item.work_item_id, run.run_id)
        escalated = False
        if projection.will_exceed:
            self._escalate_budget(goal, work_item, projection.overage_ratio, dispatched=True)
            escalated = True

        remaining = self.budget.get_remaining_budget(goal)
        request = ExecutionRequest(
            run_id=run.run_id,
            goal_id=goal.goal_id,
            work_item=work_item,
            selection=selection,
            strategy=strategy,
            cancellation=handle,
            timeout_seconds=self.settings.scheduler.run_timeout_seconds,
            remaining_tokens=(
                int(remaining.tokens.remaining) if remaining.tokens.remaining is not None else None
            ),
            remaining_cost_usd=remaining.cost_usd.remaining,
        )
        future = self._executor.submit(self._execute, request)
        with self._state_lock:
            self._in_flight[run.run_id] = _Dispatch(
                goal_id=goal.goal_id,
                work_item_id=work_item.work_item_id,
                run_id=run.run_id,
                handle=handle,
                future=future,
                started_monotonic=time.monotonic(),
            )
        self.events.publish(
            "run_dispatched",
            goal_id=goal.goal_id,
            work_item_id=work_item.work_item_id,
            run_id=run.run_id,
            **_selection_payload(selection, strategy),
        )
        logger.info(
            "Dispatched run %s for work item %s (model=%s strategy=%s)",
            run.run_id,
            work_item.work_item_id,
            selection.model,
            strategy.value,
        )
        return escalated

    def _execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Executor-thread wrapper: engine exceptions become failed outcomes."""

        started = time.monotonic()
        try:
            return self.engine.execute(request)
        except BackendRunError as error:
            kind = FailureCategory.TRANSIENT if error.transient else FailureCategory.CAPABILITY
            return ExecutionOutcome(
                result=Err(kind, str(error)),
                time_seconds=time.monotonic() - started,
            )
        except Exception as error:
            logger.exception("Execution engine raised for run %s", request.run_id)
            return ExecutionOutcome(
                result=Err(None, f"{type(error).__name__}: {error}"),
                time_seconds=time.monotonic() - started,
            )

    def _register_run_scopes(
        self,
        goal_id: str,
        work_item_id: str,
        run_id: str,
    ) -> CancellationHandle:
        self._ensure_goal_scope(goal_id)
        if not self.abort_manager.is_registered(AbortScope.WORK_ITEM, work_item_id):
            self.abort_manager.register(AbortScope.WORK_ITEM, work_item_id, parent_id=goal_id)
        return self.abort_manager.register(
            AbortScope.RUN,
            run_id,
            parent_id=work_item_id,
            timeout_seconds=self.settings.scheduler.run_timeout_seconds,
            metadata={"goal_id": goal_id},
        )

    def _ensure_goal_scope(self, goal_id: str) -> None:
        if not self.abort_manager.is_registered(AbortScope.GOAL, goal_id):
            self.abort_manager.register(AbortScope.GOAL, goal_id)

    # -- completions -----------------------------------------------------------

    def _process_completions(self, *, force_pending: bool = False) -> int:
        """Fold finished runs into storage and force-close unresponsive ones.

        A run still executing after its timeout plus the abort grace period is
        closed as ``timeout``; ``force_pending`` closes every pending run.
        """

        deadline = (
            self.settings.scheduler.run_timeout_seconds
            + self.settings.scheduler.abort_grace_seconds
        )
        now = time.monotonic()
        with self._state_lock:
            finished = [item for item in self._in_flight.values() if item.future.done()]
            unresponsive = [
                item
                for item in self._in_flight.values()
                if not item.future.done()
                and (force_pending or now - item.started_monotonic > deadline)
            ]
        errors = 0
        for dispatch in unresponsive:
            try:
                self._force_timeout(dispatch, elapsed=now - dispatch.started_monotonic)
            except Exception:
                errors += 1
                logger.exception("Failed to force timeout of run %s", dispatch.run_id)
                continue
            with self._state_lock:
                self._in_flight.pop(dispatch.run_id, None)
        for dispatch in finished:
            try:
                self._complete_dispatch(dispatch)
            except Exception:
                errors += 1
                dispatch.completion_attempts += 1
                logger.exception("Failed to record completion of run %s", dispatch.run_id)
                if dispatch.completion_attempts < _MAX_COMPLETION_ATTEMPTS:
                    continue
                logger.error(
                    "Giving up on run %s after %d attempts; restart recovery will close it",
                    dispatch.run_id,
                    dispatch.completion_attempts,
                )
            with self._state_lock:
                self._in_flight.pop(dispatch.run_id, None)
        return errors

    def _force_timeout(self, dispatch: _Dispatch, *, elapsed: float) -> None:
        """Close a run whose engine ignored cancellation past the grace period.

        The executor thread may still return later; its outcome is dropped
        because the dispatch no longer appears in ``_in_flight``.
        """

        if not dispatch.handle.is_cancelled:
            self.abort_manager.abort(AbortScope.RUN, dispatch.run_id, TIMEOUT_REASON, "scheduler")
        detail = f"Run did not stop within {elapsed:.1f}s; forced timeout"
        logger.warning("Run %s of work item %s: %s", dispatch.run_id, dispatch.work_item_id, detail)
        self.repository.complete_run(
            run_id=dispatch.run_id,
            completion=RunCompletion(
                status=RunStatus.TIMEOUT,
                time_seconds=elapsed,
                error_message=detail,
                error_category=FailureCategory.TRANSIENT,
            ),
        )
        self.budget.record_usage(
            goal_id=dispatch.goal_id,
            run_id=dispatch.run_id,
            tokens=0,
            time_seconds=elapsed,
            cost_usd=0.0,
        )
        self.events.publish(
            "run_completed",
            goal_id=dispatch.goal_id,
            work_item_id=dispatch.work_item_id,
            run_id=dispatch.run_id,
            status=RunStatus.TIMEOUT.value,
            tokens_used=0,
            forced=True,
        )
        work_item = self.repository.get_work_item(dispatch.work_item_id)
        goal = self.repository.get_goal(dispatch.goal_id)
        if work_item is None or work_item.status != WorkItemStatus.IN_PROGRESS:
            logger.debug("Work item %s already settled", dispatch.work_item_id)
        elif goal is not None and goal.status == GoalStatus.CANCELLED:
            self.repository.update_work_item_status(
                work_item_id=work_item.work_item_id,
                expected=WorkItemStatus.IN_PROGRESS,
                status=WorkItemStatus.FAILED,
                details={"run_id": dispatch.run_id, "reason": "goal_cancelled"},
            )
        else:
            self._fail_work_item(
                work_item,
                expected=WorkItemStatus.IN_PROGRESS,
                error=detail,
                kind=FailureCategory.TRANSIENT,
                run_id=dispatch.run_id,
            )
        self.abort_manager.unregister(AbortScope.RUN, dispatch.run_id)
        self.abort_manager.unregister(AbortScope.WORK_ITEM, dispatch.work_item_id)

    def _complete_dispatch(self, dispatch: _Dispatch) -> None:
        outcome = _clamped_usage(dispatch.future.result(), dispatch.run_id)
        run_status = _run_status(outcome, dispatch.handle)
        error = outcome.result if isinstance(outcome.result, Err) else None
        artifacts = outcome.result.value if isinstance(outcome.result, Ok) else []
        completed = self.repository.complete_run(
            run_id=dispatch.run_id,
            completion=RunCompletion(
                status=run_status,
                tokens_used=outcome.tokens_used,
                cost_usd=outcome.cost_usd,
                time_seconds=outcome.time_seconds,
                artifacts=list(artifacts or []),
                error_message=error.detail if error else None,
                error_category=error.kind if error else None,
            ),
        )
        if completed:
            self.metrics.record_run()
        self.budget.record_usage(
            goal_id=dispatch.goal_id,
            run_id=dispatch.run_id,
            tokens=outcome.tokens_used,
            time_seconds=outcome.time_seconds,
            cost_usd=outcome.cost_usd,
        )
        self.events.publish(
            "run_completed",
            goal_id=dispatch.goal_id,
            work_item_id=dispatch.work_item_id,
            run_id=dispatch.run_id,
            status=run_status.value,
            tokens_used=outcome.tokens_used,
        )

        work_item = self.repository.get_work_item(dispatch.work_item_id)
        if work_item is not None:
            if run_status == RunStatus.SUCCESS:
                self._handle_success(dispatch, work_item, list(artifacts or []))
            elif run_status == RunStatus.ABORTED:
                self._handle_aborted(dispatch, work_item)
            else:
                self._fail_work_item(
                    work_item,
                    expected=WorkItemStatus.IN_PROGRESS,
                    error=error.detail if error else "Run timed out",
                    kind=error.kind if error else FailureCategory.TRANSIENT,
                    run_id=dispatch.run_id,
                )
        self.abort_manager.unregister(AbortScope.RUN, dispatch.run_id)
        self.abort_manager.unregister(AbortScope.WORK_ITEM, dispatch.work_item_id)

    def _handle_success(
        self,
        dispatch: _Dispatch,
        work_item: WorkItem,
        artifacts: list[str],
    ) -> None:
        if not self.repository.update_work_item_status(
            work_item_id=work_item.work_item_id,
            expected=WorkItemStatus.IN_PROGRESS,
            status=WorkItemStatus.VERIFY,
            details={"run_id": dispatch.run_id},
        ):
            return
        run = self.repository.get_run(dispatch.run_id)
        verdict = (
            self.verification_gate.verify(work_item, run, artifacts)
            if run is not None
            else Err(None, f"Run {dispatch.run_id} disappeared before verification")
        )
        if isinstance(verdict, Ok):
            if self.repository.update_work_item_status(
                work_item_id=work_item.work_item_id,
                expected=WorkItemStatus.VERIFY,
                status=WorkItemStatus.DONE,
                verification_status=VerificationStatus.PASSED,
                details={"run_id": dispatch.run_id},
            ):
                self.metrics.record_work_item_completed(
                    time.monotonic() - dispatch.started_monotonic,
                )
                self.events.publish(
                    "work_item_completed",
                    goal_id=dispatch.goal_id,
                    work_item_id=work_item.work_item_id,
                    run_id=dispatch.run_id,
                )
            return

        if not self.repository.update_work_item_status(
            work_item_id=work_item.work_item_id,
            expected=WorkItemStatus.VERIFY,
            status=WorkItemStatus.FAILED,
            verification_status=VerificationStatus.FAILED,
            details={"run_id": dispatch.run_id, "reason": verdict.detail},
        ):
            return
        self._create_item_escalation(
            work_item,
            escalation_type=EscalationType.VALIDATION_FAILED,
            severity=EscalationSeverity.MEDIUM,
            title=f"Verification rejected work item '{work_item.title}'",
            description=verdict.detail,
            run_id=dispatch.run_id,
            context={"artifacts": artifacts},
        )

    def _handle_aborted(self, dispatch: _Dispatch, work_item: WorkItem) -> None:
        reason = dispatch.handle.reason or "aborted"
        goal = self.repository.get_goal(dispatch.goal_id)
        if goal is not None and goal.status == GoalStatus.CANCELLED:
            self.repository.update_work_item_status(
                work_item_id=work_item.work_item_id,
                expected=WorkItemStatus.IN_PROGRESS,
                status=WorkItemStatus.FAILED,
                details={"run_id": dispatch.run_id, "reason": "goal_cancelled"},
            )
            return
        if reason == SHUTDOWN_REASON:
            self._fail_work_item(
                work_item,
                expected=WorkItemStatus.IN_PROGRESS,
                error="Run interrupted by scheduler shutdown",
                kind=FailureCategory.TRANSIENT,
                run_id=dispatch.run_id,
            )
            return
        if not self.repository.update_work_item_status(
            work_item_id=work_item.work_item_id,
            expected=WorkItemStatus.IN_PROGRESS,
            status=WorkItemStatus.BLOCKED,
            details={"run_id": dispatch.run_id, "reason": reason},
        ):
            return
        self._create_item_escalation(
            work_item,
            escalation_type=EscalationType.STUCK,
            severity=EscalationSeverity.MEDIUM,
            title=f"Work item '{work_item.title}' was aborted",
            description=f"Run aborted by {dispatch.handle.actor or 'system'}: {reason}",
            run_id=dispatch.run_id,
            context={"reason": reason, "actor": dispatch.handle.actor},
        )

    def _fail_work_item(  # noqa: PLR0913
        self,
        work_item: WorkItem,
        *,
        expected: WorkItemStatus,
        error: str,
        kind: FailureCategory | None,
        run_id: str | None,
    ) -> None:
        classification = self.retry.classifier.classify(error, kind=kind)
        failed = self.repository.record_work_item_failure(
            work_item_id=work_item.work_item_id,
            expected=expected,
            error=error,
            category=classification.category,
        )
        if failed is None:
            return
        decision = self.retry.decide_retry(failed, error, kind=kind)
        if decision.should_retry:
            self.repository.schedule_work_item_retry(
                work_item_id=failed.work_item_id,
                strategy=decision.strategy,
                run_after=self.clock() + timedelta(seconds=decision.delay_seconds),
                details=decision.to_event_details(),
            )
            self.events.publish(
                "retry_scheduled",
                goal_id=failed.goal_id,
                work_item_id=failed.work_item_id,
                strategy=decision.strategy.value,
                delay_seconds=decision.delay_seconds,
            )
            logger.info(
                "Work item %s failed (%s); retrying with %s in %.2fs",
                failed.work_item_id,
                decision.category.value,
                decision.strategy.value,
                decision.delay_seconds,
            )
            return
        self._create_item_escalation(
            failed,
            escalation_type=decision.escalation_type(),
            severity=decision.escalation_severity(),
            title=f"Work item '{failed.title}' needs human guidance",
            description=f"{decision.reason}: {error}",
            run_id=run_id,
            context={
                **decision.to_event_details(),
                "retry_count": failed.retry_count,
                "attempted_strategies": [item.value for item in failed.attempted_strategies],
            },
        )

    def _escalate_budget(
        self,
        goal: Goal,
        work_item: WorkItem,
        overage_ratio: float,
        *,
        dispatched: bool,
    ) -> Escalation:
        verb = "Dispatched over budget" if dispatched else "Budget would be exceeded"
        return self._create_item_escalation(
            work_item,
            escalation_type=EscalationType.RESOURCE,
            severity=overage_severity(overage_ratio),
            title=f"{verb}: '{work_item.title}'",
            description=(
                f"Estimate of {work_item.estimated_tokens} tokens / "
                f"${work_item.estimated_cost_usd:.4f} exceeds the remaining budget of goal "
                f"'{goal.title}' by {_ratio(overage_ratio)}."
            ),
            run_id=None,
            context={
                "overage_ratio": _ratio(overage_ratio),
                "dispatched": dispatched,
                "estimated_tokens": work_item.estimated_tokens,
                "estimated_cost_usd": work_item.estimated_cost_usd,
                "spent_tokens": goal.spent_tokens,
                "budget_tokens": goal.budget_tokens,
                "spent_cost_usd": goal.spent_cost_usd,
                "budget_cost_usd": goal.budget_cost_usd,
            },
        )

    def _create_item_escalation(  # noqa: PLR0913
        self,
        work_item: WorkItem,
        *,
        escalation_type: EscalationType,
        severity: EscalationSeverity,
        title: str,
        description: str,
        run_id: str | None,
        context: dict[str, object],
    ) -> Escalation:
        escalation = self.escalations.create_escalation(
            EscalationCreate(
                goal_id=work_item.goal_id,
                work_item_id=work_item.work_item_id,
                run_id=run_id,
                escalation_type=escalation_type,
                severity=severity,
                title=title,
                description=description,
                context=context,
            ),
        )
        self.events.publish(
            "work_item_escalated",
            goal_id=work_item.goal_id,
            work_item_id=work_item.work_item_id,
            escalation_id=escalation.escalation_id,
            escalation_type=escalation_type.value,
        )
        return escalation

    # -- retries and resolutions -----------------------------------------------

    def _promote_due_retries(self) -> int:
        errors = 0
        for work_item in self.repository.list_due_retries(now=self.clock()):
            try:
                goal = self.repository.get_goal(work_item.goal_id)
                if goal is None or goal.status not in _SCHEDULABLE_GOAL_STATUSES:
                    continue
                self.repository.requeue_work_item(
                    work_item_id=work_item.work_item_id,
                    expected=WorkItemStatus.FAILED,
                    status=WorkItemStatus.READY,
                    next_strategy=work_item.next_strategy,
                    reason="backoff_elapsed",
                )
            except Exception:
                errors += 1
                logger.exception("Failed to re-queue work item %s", work_item.work_item_id)
        return errors

    def _apply_resolutions(self, goal: Goal) -> None:
        for escalation in self.repository.list_unapplied_resolutions(goal_id=goal.goal_id):
            self._apply_resolution(escalation)
            self.repository.mark_resolution_applied(escalation_id=escalation.escalation_id)

    def _apply_resolution(self, escalation: Escalation) -> None:
        action = escalation.resolution_action
        data = escalation.resolution_data
        logger.info(
            "Applying resolution %s of escalation %s",
            action.value if action else None,
            escalation.escalation_id,
        )
        if action == ResolutionAction.ABORT:
            self.cancel_goal(
                escalation.goal_id,
                actor=escalation.resolver or "human",
                reason=f"escalation {escalation.escalation_id} resolved with abort",
            )
            return
        if action in {ResolutionAction.RETRY, ResolutionAction.MODIFY_AND_RETRY}:
            self._apply_budget_changes(escalation.goal_id, data)
        if escalation.work_item_id is None:
            return
        work_item = self.repository.get_work_item(escalation.work_item_id)
        if work_item is None or work_item.status == WorkItemStatus.DONE or work_item.skipped:
            return
        if action == ResolutionAction.SKIP:
            self.repository.mark_work_item_skipped(
                work_item_id=work_item.work_item_id,
                actor=escalation.resolver or "human",
            )
            return
        if action not in _REQUEUE_ACTIONS:
            return
        if work_item.status not in {WorkItemStatus.FAILED, WorkItemStatus.BLOCKED}:
            return
        modify = action == ResolutionAction.MODIFY_AND_RETRY
        self.repository.requeue_work_item(
            work_item_id=work_item.work_item_id,
            expected=work_item.status,
            status=WorkItemStatus.READY,
            reset_retries=True,
            next_strategy=_resolution_strategy(action, data),
            description=_optional_str(data.get("description")) if modify else None,
            estimated_tokens=_optional_int(data.get("estimated_tokens")) if modify else None,
            estimated_cost_usd=_optional_float(data.get("estimated_cost_usd")) if modify else None,
            reason=f"resolution:{action.value}",
        )

    def _apply_budget_changes(self, goal_id: str, data: dict[str, object]) -> None:
        budget_tokens = _optional_int(data.get("budget_tokens"))
        budget_time_seconds = _optional_float(data.get("budget_time_seconds"))
        budget_cost_usd = _optional_float(data.get("budget_cost_usd"))
        if budget_tokens is None and budget_time_seconds is None and budget_cost_usd is None:
            return
        self.repository.update_goal_budget(
            goal_id=goal_id,
            budget_tokens=budget_tokens,
            budget_time_seconds=budget_time_seconds,
            budget_cost_usd=budget_cost_usd,
        )

    def _maybe_complete_goal(self, goal_id: str) -> None:
        work_items = self.repository.get_work_items_for_goal(goal_id)
        if not work_items:
            return
        abandoned = _abandoned_ids(work_items)
        settled = all(
            item.status == WorkItemStatus.DONE or item.skipped or item.work_item_id in abandoned
            for item in work_items
        )
        if not settled:
            return
        with self._state_lock:
            if any(item.goal_id == goal_id for item in self._in_flight.values()):
                return
        if self.repository.list_escalations(goal_id=goal_id, statuses=BLOCKING_STATUSES, limit=1):
            return
        if self.repository.list_unapplied_resolutions(goal_id=goal_id):
            return
        if not self.repository.update_goal_status(
            goal_id=goal_id,
            expected=GoalStatus.ACTIVE,
            status=GoalStatus.COMPLETED,
            details={"work_items": len(work_items), "abandoned": sorted(abandoned)},
        ):
            return
        self.abort_manager.unregister(AbortScope.GOAL, goal_id)
        self.events.publish("goal_completed", goal_id=goal_id, abandoned=len(abandoned))
        if abandoned:
            logger.warning("Goal %s completed with %d abandoned work items", goal_id, len(abandoned))
        else:
            logger.info("Goal %s completed", goal_id)

    # -- loop plumbing -----------------------------------------------------------

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping scheduler", name)
            self._stop_signal_name = name
            self._stop_requested = True

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # handlers can only be installed from the main thread
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _run_status(outcome: ExecutionOutcome, handle: CancellationHandle) -> RunStatus:
    if isinstance(outcome.result, Ok) and not outcome.cancelled and not outcome.timed_out:
        return RunStatus.SUCCESS
    if outcome.timed_out or handle.reason == TIMEOUT_REASON:
        return RunStatus.TIMEOUT
    if outcome.cancelled or handle.is_cancelled:
        return RunStatus.ABORTED
    return RunStatus.FAILURE


def _clamped_usage(outcome: ExecutionOutcome, run_id: str) -> ExecutionOutcome:
    if outcome.tokens_used >= 0 and outcome.cost_usd >= 0 and outcome.time_seconds >= 0:
        return outcome
    logger.warning(
        "Run %s reported negative usage (tokens=%s cost=%s time=%s); clamping to zero",
        run_id,
        outcome.tokens_used,
        outcome.cost_usd,
        outcome.time_seconds,
    )
    return replace(
        outcome,
        tokens_used=max(0, outcome.tokens_used),
        cost_usd=max(0.0, outcome.cost_usd),
        time_seconds=max(0.0, outcome.time_seconds),
    )


def _satisfied_ids(work_items: list[WorkItem]) -> set[str]:
    return {
        item.work_item_id
        for item in work_items
        if item.status == WorkItemStatus.DONE or item.skipped
    }


def _abandoned_ids(work_items: list[WorkItem]) -> set[str]:
    """Items that can no longer progress: terminally failed ones and their dependents.

    A failed item without a scheduled retry, or a blocked item, is terminal once
    no escalation holds it; callers check for blocking escalations separately.
    """

    abandoned = {
        item.work_item_id
        for item in work_items
        if not item.skipped
        and (
            (item.status == WorkItemStatus.FAILED and item.next_retry_at is None)
            or item.status == WorkItemStatus.BLOCKED
        )
    }
    changed = True
    while changed:
        changed = False
        for item in work_items:
            if item.work_item_id in abandoned or item.skipped:
                continue
            if item.status == WorkItemStatus.QUEUED and abandoned.intersection(item.dependencies):
                abandoned.add(item.work_item_id)
                changed = True
    return abandoned


def _resolution_strategy(
    action: ResolutionAction,
    data: dict[str, object],
) -> RetryStrategy | None:
    requested = data.get("strategy")
    if isinstance(requested, str) and requested:
        return RetryStrategy(requested)
    if action == ResolutionAction.ALTERNATIVE_APPROACH:
        return RetryStrategy.ALTERNATIVE_TOOL
    return None


def _selection_payload(selection: ModelSelection, strategy: RetryStrategy) -> dict[str, object]:
    return {**selection.to_metadata(), "strategy": strategy.value}


def _ratio(value: float) -> float:
    return round(value, 4) if value != float("inf") else value


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    return int(value) if isinstance(value, (int, float, str)) and str(value).strip() else None


def _optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    return float(value) if isinstance(value, (int, float, str)) and str(value).strip() else None
