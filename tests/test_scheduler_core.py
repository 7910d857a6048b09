from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator

import allure
import pytest

from goal_autopilot.config import Settings
from goal_autopilot.scheduler.backend.base import ExecutionOutcome, ExecutionRequest
from goal_autopilot.scheduler.core import RESTART_ERROR, SchedulerCore
from goal_autopilot.scheduler.events import SchedulerEvent
from goal_autopilot.scheduler.model_selection import ModelSelection, ModelSelector, TierConfig
from goal_autopilot.scheduler.models import (
    AbortScope,
    EscalationCreate,
    Err,
    EscalationSeverity,
    EscalationStatus,
    EscalationType,
    GoalStatus,
    Ok,
    ResolutionAction,
    Result,
    RetryStrategy,
    Run,
    RunStatus,
    SchedulerStatus,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
)
from goal_autopilot.scheduler.repository import SqlSchedulerRepository
from goal_autopilot.scheduler.services import AddWorkItem, CreateGoal, GoalService

pytestmark = [
    allure.epic("Goal Scheduler"),
    allure.feature("Tick Loop Orchestration"),
]


def _ok(tokens: int = 500) -> ExecutionOutcome:
    return ExecutionOutcome(result=Ok(["result.md"]), tokens_used=tokens, time_seconds=0.01)


def _fail(detail: str, tokens: int = 10) -> ExecutionOutcome:
    return ExecutionOutcome(result=Err(None, detail), tokens_used=tokens, time_seconds=0.01)


class ScriptedEngine:
    """Returns queued outcomes in order, then succeeds."""

    def __init__(self, outcomes: list[ExecutionOutcome] | None = None) -> None:
        self._outcomes = list(outcomes or [])
        self._lock = threading.Lock()
        self.requests: list[ExecutionRequest] = []

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self._lock:
            self.requests.append(request)
            return self._outcomes.pop(0) if self._outcomes else _ok()


class BlockingEngine:
    """Blocks until the run is cancelled; calls after ``block_calls`` succeed."""

    def __init__(self, *, block_calls: int | None = None) -> None:
        self.block_calls = block_calls
        self.started = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self._lock:
            self.calls += 1
            call = self.calls
        if self.block_calls is not None and call > self.block_calls:
            return _ok()
        self.started.set()
        cancelled = request.cancellation.wait(5)
        return ExecutionOutcome(
            result=Err(None, f"Run cancelled: {request.cancellation.reason}"),
            time_seconds=0.01,
            cancelled=cancelled,
        )


class UnresponsiveEngine:
    """First call ignores cancellation until released; later calls succeed."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0
        self._lock = threading.Lock()

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self._lock:
            self.calls += 1
            call = self.calls
        if call == 1:
            self.release.wait(10)
        return _ok()


class RejectingGate:
    def verify(self, work_item: WorkItem, run: Run, artifacts: list[str]) -> Result[None]:
        return Err(None, f"{work_item.title}: no tests were added ({len(artifacts)} artifacts)")


class ExplodingSelector(ModelSelector):
    def select_model(
        self,
        work_item: WorkItem,
        *,
        strategy: RetryStrategy | None = None,
    ) -> ModelSelection:
        if work_item.title == "explode":
            raise RuntimeError("selector exploded")
        return super().select_model(work_item, strategy=strategy)


@pytest.fixture()
def service(repository: SqlSchedulerRepository, settings: Settings) -> GoalService:
    return GoalService(repository=repository, settings=settings)


@pytest.fixture()
def make_core(
    repository: SqlSchedulerRepository,
    settings: Settings,
) -> Iterator[Callable[..., SchedulerCore]]:
    cores: list[SchedulerCore] = []

    def _make(engine: object, **kwargs: object) -> SchedulerCore:
        core = SchedulerCore(repository=repository, settings=settings, engine=engine, **kwargs)
        cores.append(core)
        return core

    yield _make
    for core in cores:
        core.stop()


def _submitted_goal(  # noqa: PLR0913
    service: GoalService,
    *,
    title: str = "Ship feature",
    budget_tokens: int | None = None,
    estimated_tokens: int = 500,
    max_retries: int = 3,
    priority: int = 50,
) -> tuple[str, str]:
    goal = service.create_goal(
        CreateGoal(title=title, budget_tokens=budget_tokens, priority=priority),
    ).goal
    work_item = service.add_work_item(
        AddWorkItem(
            goal_id=goal.goal_id,
            title=title,
            estimated_tokens=estimated_tokens,
            max_retries=max_retries,
        ),
    )
    service.submit_goal(goal.goal_id)
    return goal.goal_id, work_item.work_item_id


def _drive(core: SchedulerCore, *, max_ticks: int = 50) -> None:
    for _ in range(max_ticks):
        core.tick()
        assert core.wait_for_in_flight(timeout=5)
        if core.is_idle():
            return
    raise AssertionError("scheduler did not go idle")


def _open_escalations(repository: SqlSchedulerRepository, goal_id: str):
    return repository.list_escalations(
        goal_id=goal_id,
        statuses=(EscalationStatus.OPEN, EscalationStatus.ACKNOWLEDGED),
    )


def test_goal_completes_within_budget(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, budget_tokens=10_000)
    engine = ScriptedEngine([_ok(tokens=500)])
    core = make_core(engine)
    completed: list[SchedulerEvent] = []
    core.subscribe("goal_completed", completed.append)
    core.start()

    _drive(core)

    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    assert goal.spent_tokens == 500
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.DONE
    assert work_item.verification_status == VerificationStatus.PASSED
    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.SUCCESS]
    assert runs[0].artifacts == ["result.md"]
    assert repository.list_escalations(goal_id=goal_id) == []
    assert [event.payload["goal_id"] for event in completed] == [goal_id]
    snapshot = core.snapshot()
    assert snapshot.work_items_completed == 1
    assert snapshot.runs_executed == 1
    assert snapshot.status == SchedulerStatus.RUNNING


def test_transient_failures_exhaust_retries_and_escalate(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, max_retries=3)
    engine = ScriptedEngine([_fail("503 service unavailable") for _ in range(3)])
    core = make_core(engine)

    _drive(core)

    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.FAILED
    assert work_item.retry_count == 3
    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.FAILURE] * 3
    assert [run.run_sequence for run in runs] == [1, 2, 3]
    assert [run.strategy for run in runs] == [
        RetryStrategy.SAME_APPROACH,
        RetryStrategy.SAME_APPROACH,
        RetryStrategy.PARAMETER_ADJUST,
    ]
    escalations = _open_escalations(repository, goal_id)
    assert len(escalations) == 1
    assert escalations[0].escalation_type == EscalationType.RETRIES_EXHAUSTED
    assert escalations[0].severity == EscalationSeverity.MEDIUM
    assert escalations[0].work_item_id == work_item_id
    assert escalations[0].run_id == runs[-1].run_id
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.ACTIVE


def test_retry_resolution_requeues_and_completes(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, max_retries=3)
    engine = ScriptedEngine([_fail("503 service unavailable") for _ in range(3)])
    core = make_core(engine)
    _drive(core)
    (escalation,) = _open_escalations(repository, goal_id)

    core.escalations.resolve_escalation(
        escalation.escalation_id,
        action=ResolutionAction.RETRY,
        resolver="lead",
    )
    _drive(core)

    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs][-1] == RunStatus.SUCCESS
    assert len(runs) == 4
    stored = repository.get_escalation(escalation.escalation_id)
    assert stored is not None
    assert stored.resolution_applied is True


def test_dispatch_blocked_when_estimate_exceeds_budget(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, budget_tokens=1_000, estimated_tokens=2_000)
    engine = ScriptedEngine()
    core = make_core(engine)

    _drive(core)

    assert engine.requests == []
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.BLOCKED
    (escalation,) = _open_escalations(repository, goal_id)
    assert escalation.escalation_type == EscalationType.RESOURCE
    assert escalation.severity == EscalationSeverity.CRITICAL
    assert escalation.context["dispatched"] is False
    assert escalation.context["overage_ratio"] == 1.0
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.ACTIVE
    assert goal.spent_tokens == 0


def test_modify_and_retry_resolution_unblocks_work_item(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, budget_tokens=1_000, estimated_tokens=2_000)
    engine = ScriptedEngine([_ok(tokens=400)])
    core = make_core(engine)
    _drive(core)
    (escalation,) = _open_escalations(repository, goal_id)

    core.escalations.resolve_escalation(
        escalation.escalation_id,
        action=ResolutionAction.MODIFY_AND_RETRY,
        resolver="lead",
        data={"estimated_tokens": 600, "description": "Only the API part"},
    )
    _drive(core)

    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.DONE
    assert work_item.estimated_tokens == 600
    assert work_item.description == "Only the API part"
    assert engine.requests[0].work_item.estimated_tokens == 600
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED


def test_overage_within_policy_dispatches_and_escalates(
    repository,
    service,
    settings,
    make_core,
) -> None:
    settings.budget.allow_overage = True
    settings.budget.max_overage_percent = 0.5
    goal_id, work_item_id = _submitted_goal(service, budget_tokens=1_000, estimated_tokens=1_200)
    engine = ScriptedEngine([_ok(tokens=300)])
    core = make_core(engine)

    _drive(core)

    assert len(engine.requests) == 1
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.DONE
    (escalation,) = _open_escalations(repository, goal_id)
    assert escalation.escalation_type == EscalationType.RESOURCE
    assert escalation.severity == EscalationSeverity.MEDIUM
    assert escalation.context["dispatched"] is True
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.ACTIVE

    core.escalations.dismiss_escalation(escalation.escalation_id, reason="accepted", actor="lead")
    _drive(core)

    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    assert goal.spent_tokens == 300


def test_spent_budget_blocks_goal_until_budget_is_raised(repository, service, make_core) -> None:
    goal = service.create_goal(CreateGoal(title="Two steps", budget_tokens=1_000)).goal
    first = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="first", estimated_tokens=500),
    )
    second = service.add_work_item(
        AddWorkItem(
            goal_id=goal.goal_id,
            title="second",
            estimated_tokens=500,
            dependencies=(first.work_item_id,),
        ),
    )
    service.submit_goal(goal.goal_id)
    engine = ScriptedEngine([_ok(tokens=1_500), _ok(tokens=100)])
    core = make_core(engine)

    _drive(core)

    blocked = repository.get_goal(goal.goal_id)
    assert blocked is not None
    assert blocked.status == GoalStatus.BLOCKED
    (escalation,) = _open_escalations(repository, goal.goal_id)
    assert escalation.escalation_type == EscalationType.RESOURCE
    assert escalation.work_item_id is None
    assert escalation.severity == EscalationSeverity.HIGH
    assert len(engine.requests) == 1

    core.escalations.resolve_escalation(
        escalation.escalation_id,
        action=ResolutionAction.RETRY,
        resolver="lead",
        data={"budget_tokens": 5_000},
    )
    _drive(core)

    completed = repository.get_goal(goal.goal_id)
    assert completed is not None
    assert completed.status == GoalStatus.COMPLETED
    assert completed.budget_tokens == 5_000
    assert completed.spent_tokens == 1_600
    second_item = repository.get_work_item(second.work_item_id)
    assert second_item is not None
    assert second_item.status == WorkItemStatus.DONE


def test_skip_resolution_satisfies_dependents(repository, service, make_core) -> None:
    goal = service.create_goal(CreateGoal(title="Skip flow")).goal
    first = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="first", max_retries=0),
    )
    second = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="second", dependencies=(first.work_item_id,)),
    )
    service.submit_goal(goal.goal_id)
    engine = ScriptedEngine([_fail("model not found")])
    core = make_core(engine)
    _drive(core)
    (escalation,) = _open_escalations(repository, goal.goal_id)

    core.escalations.resolve_escalation(
        escalation.escalation_id,
        action=ResolutionAction.SKIP,
        resolver="lead",
    )
    _drive(core)

    skipped = repository.get_work_item(first.work_item_id)
    assert skipped is not None
    assert skipped.skipped is True
    done = repository.get_work_item(second.work_item_id)
    assert done is not None
    assert done.status == WorkItemStatus.DONE
    completed = repository.get_goal(goal.goal_id)
    assert completed is not None
    assert completed.status == GoalStatus.COMPLETED


def test_cancel_goal_aborts_in_flight_run(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service)
    engine = BlockingEngine()
    core = make_core(engine)
    core.tick()
    assert engine.started.wait(5)

    aborted = core.cancel_goal(goal_id, actor="tester", reason="no longer needed")
    assert aborted == 3
    assert core.wait_for_in_flight(timeout=5)
    core.tick()

    (run,) = repository.get_runs_by_work_item(work_item_id)
    assert run.status == RunStatus.ABORTED
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.FAILED
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.CANCELLED
    assert _open_escalations(repository, goal_id) == []
    assert core.cancel_goal(goal_id) == 0
    assert core.is_idle()


def test_cancel_from_another_process_reaches_running_scheduler(
    repository,
    service,
    make_core,
) -> None:
    goal_id, work_item_id = _submitted_goal(service)
    engine = BlockingEngine()
    core = make_core(engine)
    core.tick()
    assert engine.started.wait(5)

    service.cancel_goal(goal_id, actor="operator", reason="scope changed")
    core.tick()
    assert core.wait_for_in_flight(timeout=5)
    core.tick()

    (run,) = repository.get_runs_by_work_item(work_item_id)
    assert run.status == RunStatus.ABORTED
    context = core.abort_manager.abort_context(AbortScope.GOAL, goal_id)
    assert context is not None
    assert context.actor == "external"
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.FAILED


def test_start_recovers_orphaned_runs(repository, service, make_core) -> None:
    _, work_item_id = _submitted_goal(service)
    repository.update_work_item_status(
        work_item_id=work_item_id,
        expected=WorkItemStatus.QUEUED,
        status=WorkItemStatus.READY,
    )
    repository.update_work_item_status(
        work_item_id=work_item_id,
        expected=WorkItemStatus.READY,
        status=WorkItemStatus.IN_PROGRESS,
    )
    orphan = repository.create_run(
        work_item_id=work_item_id,
        model="claude-sonnet-4-5",
        strategy=RetryStrategy.SAME_APPROACH,
    )
    core = make_core(ScriptedEngine())

    assert core.start() == 1

    run = repository.get_run(orphan.run_id)
    assert run is not None
    assert run.status == RunStatus.ABORTED
    assert run.error_message == RESTART_ERROR
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.FAILED
    assert work_item.retry_count == 1
    assert work_item.next_retry_at is not None

    _drive(core)

    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.ABORTED, RunStatus.SUCCESS]


def test_failing_goal_does_not_stop_other_goals(repository, service, settings, make_core) -> None:
    bad_goal, _ = _submitted_goal(service, title="explode", priority=90)
    good_goal, _ = _submitted_goal(service, title="fine", priority=10)
    core = make_core(
        ScriptedEngine(),
        model_selector=ExplodingSelector(TierConfig.from_settings(settings.models)),
    )
    core.start()

    core.tick()

    snapshot = core.snapshot()
    assert snapshot.status == SchedulerStatus.DEGRADED
    assert snapshot.error_count == 1
    assert snapshot.goals_processed == 1
    assert core.wait_for_in_flight(timeout=5)
    core.tick()

    good = repository.get_goal(good_goal)
    assert good is not None
    assert good.status == GoalStatus.COMPLETED
    bad = repository.get_goal(bad_goal)
    assert bad is not None
    assert bad.status == GoalStatus.ACTIVE


def test_overlapping_tick_is_skipped(make_core) -> None:
    core = make_core(ScriptedEngine())

    core._tick_lock.acquire()
    try:
        assert core.tick() is False
    finally:
        core._tick_lock.release()

    snapshot = core.snapshot()
    assert snapshot.skipped_ticks == 1
    assert snapshot.ticks == 0


def test_verification_rejection_escalates(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service)
    core = make_core(ScriptedEngine(), verification_gate=RejectingGate())

    _drive(core)

    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.FAILED
    assert work_item.verification_status == VerificationStatus.FAILED
    (run,) = repository.get_runs_by_work_item(work_item_id)
    assert run.status == RunStatus.SUCCESS
    (escalation,) = _open_escalations(repository, goal_id)
    assert escalation.escalation_type == EscalationType.VALIDATION_FAILED
    assert "no tests were added" in escalation.description


def test_run_timeout_is_retried(repository, service, settings, make_core) -> None:
    settings.scheduler.run_timeout_seconds = 0.5
    goal_id, work_item_id = _submitted_goal(service)
    core = make_core(BlockingEngine(block_calls=1))

    _drive(core)

    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.TIMEOUT, RunStatus.SUCCESS]
    assert core.abort_manager.stats().timeouts >= 1
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED


def test_paused_scheduler_does_not_dispatch(service, make_core) -> None:
    _submitted_goal(service)
    engine = ScriptedEngine()
    core = make_core(engine)
    core.start()
    core.pause()

    core.tick()

    assert core.status == SchedulerStatus.PAUSED
    assert engine.requests == []
    core.resume()
    core.tick()
    assert core.wait_for_in_flight(timeout=5)
    assert len(engine.requests) == 1


def test_run_loop_until_idle_stops_and_cannot_restart(repository, service, make_core) -> None:
    goal_id, _ = _submitted_goal(service)
    core = make_core(ScriptedEngine())

    snapshot = core.run_loop(max_ticks=100, until_idle=True)

    assert snapshot.status == SchedulerStatus.STOPPED
    assert snapshot.work_items_completed == 1
    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    with pytest.raises(RuntimeError, match="stopped"):
        core.run_loop(max_ticks=1)


def test_unresponsive_run_is_force_timed_out_and_retried(
    repository,
    service,
    settings,
    make_core,
) -> None:
    settings.scheduler.run_timeout_seconds = 0.3
    settings.scheduler.abort_grace_seconds = 0.2
    goal_id, work_item_id = _submitted_goal(service)
    engine = UnresponsiveEngine()
    core = make_core(engine)
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            core.tick()
            goal = repository.get_goal(goal_id)
            assert goal is not None
            if goal.status == GoalStatus.COMPLETED:
                break
            time.sleep(0.05)
    finally:
        engine.release.set()

    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.TIMEOUT, RunStatus.SUCCESS]
    assert runs[0].error_message is not None
    assert "forced timeout" in runs[0].error_message
    work_item = repository.get_work_item(work_item_id)
    assert work_item is not None
    assert work_item.status == WorkItemStatus.DONE
    assert work_item.retry_count == 1
    assert engine.calls == 2
    assert core.snapshot().in_flight == 0


def test_goals_waiting_on_humans_do_not_take_concurrency_slots(
    repository,
    service,
    settings,
    make_core,
) -> None:
    settings.scheduler.max_concurrent_goals = 1
    high_goal, _ = _submitted_goal(service, title="high", priority=90)
    low_goal, low_item = _submitted_goal(service, title="low", priority=10)
    engine = ScriptedEngine()
    core = make_core(engine)
    question = core.escalations.create_escalation(
        EscalationCreate(
            goal_id=high_goal,
            escalation_type=EscalationType.AMBIGUOUS,
            severity=EscalationSeverity.LOW,
            title="Which API version?",
        ),
    )
    abort_request = core.escalations.create_escalation(
        EscalationCreate(
            goal_id=high_goal,
            escalation_type=EscalationType.STUCK,
            severity=EscalationSeverity.HIGH,
            title="Is this still wanted?",
        ),
    )

    _drive(core)

    low = repository.get_work_item(low_item)
    assert low is not None
    assert low.status == WorkItemStatus.DONE
    completed = repository.get_goal(low_goal)
    assert completed is not None
    assert completed.status == GoalStatus.COMPLETED
    assert [request.goal_id for request in engine.requests] == [low_goal]

    core.escalations.resolve_escalation(
        abort_request.escalation_id,
        action=ResolutionAction.ABORT,
        resolver="lead",
    )
    core.tick()

    cancelled = repository.get_goal(high_goal)
    assert cancelled is not None
    assert cancelled.status == GoalStatus.CANCELLED
    dismissed = repository.get_escalation(question.escalation_id)
    assert dismissed is not None
    assert dismissed.status == EscalationStatus.DISMISSED
    assert len(engine.requests) == 1


def test_dismissed_escalation_completes_goal_with_abandoned_items(
    repository,
    service,
    make_core,
) -> None:
    goal = service.create_goal(CreateGoal(title="Best effort")).goal
    first = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="first", max_retries=1),
    )
    second = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="second", dependencies=(first.work_item_id,)),
    )
    service.submit_goal(goal.goal_id)
    engine = ScriptedEngine([_fail("503 service unavailable")])
    core = make_core(engine)
    completed: list[SchedulerEvent] = []
    core.subscribe("goal_completed", completed.append)
    _drive(core)
    (escalation,) = _open_escalations(repository, goal.goal_id)
    assert escalation.escalation_type == EscalationType.RETRIES_EXHAUSTED

    core.escalations.dismiss_escalation(escalation.escalation_id, reason="not needed", actor="lead")
    _drive(core)

    finished = repository.get_goal(goal.goal_id)
    assert finished is not None
    assert finished.status == GoalStatus.COMPLETED
    failed = repository.get_work_item(first.work_item_id)
    assert failed is not None
    assert failed.status == WorkItemStatus.FAILED
    waiting = repository.get_work_item(second.work_item_id)
    assert waiting is not None
    assert waiting.status == WorkItemStatus.QUEUED
    assert len(engine.requests) == 1
    assert [event.payload["abandoned"] for event in completed] == [2]


def test_resolved_but_unapplied_escalation_holds_goal_open(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, max_retries=1)
    engine = ScriptedEngine([_fail("503 service unavailable")])
    core = make_core(engine)
    _drive(core)
    (escalation,) = _open_escalations(repository, goal_id)

    core.escalations.resolve_escalation(
        escalation.escalation_id,
        action=ResolutionAction.RETRY,
        resolver="lead",
    )
    core._maybe_complete_goal(goal_id)

    pending = repository.get_goal(goal_id)
    assert pending is not None
    assert pending.status == GoalStatus.ACTIVE

    _drive(core)

    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    runs = repository.get_runs_by_work_item(work_item_id)
    assert [run.status for run in runs] == [RunStatus.FAILURE, RunStatus.SUCCESS]


def test_negative_usage_report_is_clamped(repository, service, make_core) -> None:
    goal_id, work_item_id = _submitted_goal(service, budget_tokens=10_000)
    engine = ScriptedEngine(
        [
            ExecutionOutcome(
                result=Ok(["result.md"]),
                tokens_used=-50,
                cost_usd=-1.0,
                time_seconds=0.01,
            ),
        ],
    )
    core = make_core(engine)

    _drive(core)

    goal = repository.get_goal(goal_id)
    assert goal is not None
    assert goal.status == GoalStatus.COMPLETED
    assert goal.spent_tokens == 0
    assert goal.spent_cost_usd == 0.0
    (run,) = repository.get_runs_by_work_item(work_item_id)
    assert run.status == RunStatus.SUCCESS
    assert run.tokens_used == 0
