from __future__ import annotations

import allure
import pytest

from goal_autopilot.scheduler.events import SchedulerEvent
from goal_autopilot.scheduler.models import (
    EscalationCreate,
    EscalationSeverity,
    EscalationStatus,
    EscalationType,
    GoalStatus,
    ModelTier,
    WorkItemType,
)
from goal_autopilot.scheduler.repository import NotFoundError
from goal_autopilot.scheduler.services import AddWorkItem, CreateGoal, GoalService

pytestmark = [
    allure.epic("Goal Scheduler"),
    allure.feature("Goal Intake"),
]


@pytest.fixture
def service(repository, settings) -> GoalService:
    return GoalService(repository=repository, settings=settings)


def test_create_goal_records_planning_model(service, repository) -> None:
    planned = service.create_goal(
        CreateGoal(
            title="  Release v2  ",
            success_criteria=("changelog published",),
            budget_tokens=10_000,
        ),
    )

    assert planned.goal.title == "Release v2"
    assert planned.goal.status == GoalStatus.QUEUED
    assert planned.goal.success_criteria[0].description == "changelog published"
    assert planned.planning.tier == ModelTier.SIMPLE
    events = repository.list_events(goal_id=planned.goal.goal_id)
    assert events[-1].event_type == "planning_model_selected"
    assert events[-1].details["model"] == planned.planning.model


@pytest.mark.parametrize(
    ("command", "message"),
    [
        (CreateGoal(title="   "), "title"),
        (CreateGoal(title="Budget", budget_tokens=-1), "budget_tokens"),
        (CreateGoal(title="Budget", budget_cost_usd=-0.5), "budget_cost_usd"),
    ],
)
def test_create_goal_validates_input(service, command, message) -> None:
    with pytest.raises(ValueError, match=message):
        service.create_goal(command)


def test_add_work_item_normalizes_type_and_effort(service) -> None:
    goal = service.create_goal(CreateGoal(title="Docs")).goal

    work_item = service.add_work_item(
        AddWorkItem(goal_id=goal.goal_id, title="Write guide", item_type="DOC", effort="xl"),
    )

    assert work_item.item_type == WorkItemType.DOC
    assert work_item.estimated_tokens == 50_000
    with pytest.raises(ValueError, match="Unsupported work item type"):
        service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="x", item_type="poem"))
    with pytest.raises(ValueError, match="Unsupported effort"):
        service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="x", effort="huge"))
    with pytest.raises(NotFoundError):
        service.add_work_item(AddWorkItem(goal_id="missing", title="x"))


def test_submit_requires_queued_goal_with_work(service) -> None:
    published: list[SchedulerEvent] = []
    service.events.subscribe("goal_submitted", published.append)
    goal = service.create_goal(CreateGoal(title="Empty")).goal

    with pytest.raises(ValueError, match="no work items"):
        service.submit_goal(goal.goal_id)

    service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="step"))
    submitted = service.submit_goal(goal.goal_id)

    assert submitted.status == GoalStatus.ACTIVE
    assert [event.payload for event in published] == [{"goal_id": goal.goal_id}]
    with pytest.raises(ValueError, match="only queued goals submit"):
        service.submit_goal(goal.goal_id)


def test_cancel_goal_dismisses_pending_escalations(service, repository) -> None:
    goal = service.create_goal(CreateGoal(title="Doomed")).goal
    escalation = service.escalations.create_escalation(
        EscalationCreate(
            goal_id=goal.goal_id,
            escalation_type=EscalationType.AMBIGUOUS,
            severity=EscalationSeverity.LOW,
            title="Which database?",
        ),
    )

    cancelled = service.cancel_goal(goal.goal_id, actor="alice", reason="descoped")

    assert cancelled.status == GoalStatus.CANCELLED
    stored = repository.get_escalation(escalation.escalation_id)
    assert stored is not None
    assert stored.status == EscalationStatus.DISMISSED
    assert stored.dismiss_reason == "goal cancelled: descoped"
    with pytest.raises(ValueError, match="already cancelled"):
        service.cancel_goal(goal.goal_id)
    with pytest.raises(ValueError, match="cannot add work"):
        service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="late"))


def test_overview_and_status_counts(service) -> None:
    goal = service.create_goal(CreateGoal(title="Overview", budget_tokens=1_000)).goal
    service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="a", estimated_tokens=10))
    service.add_work_item(AddWorkItem(goal_id=goal.goal_id, title="b", estimated_tokens=10))
    service.create_goal(CreateGoal(title="Other"))

    overview = service.overview(goal.goal_id)
    goal_counts, item_counts = service.status_counts()

    assert overview.item_counts == {"queued": 2}
    assert set(overview.runs) == {item.work_item_id for item in overview.work_items}
    assert overview.budget.budget.tokens.remaining == 1_000
    assert goal_counts == {"queued": 2}
    assert item_counts == {"queued": 2}
    assert [item.title for item in service.list_goals(status="queued", limit=1)] == ["Other"]
    assert service.list_goals(status="active") == []
