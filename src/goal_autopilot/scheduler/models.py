"""Domain models for goals, work items, runs and escalations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar


class GoalStatus(str, Enum):
    """Goal lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WorkItemStatus(str, Enum):
    """Work item lifecycle states."""

    QUEUED = "queued"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    VERIFY = "verify"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


class RunStatus(str, Enum):
    """Run lifecycle states; everything except RUNNING is absorbing."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class WorkItemType(str, Enum):
    CODE = "code"
    TEST = "test"
    DOC = "doc"
    REFACTOR = "refactor"
    ANALYSIS = "analysis"


class EffortEstimate(str, Enum):
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class FailureCategory(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    RESOURCE = "resource"
    CAPABILITY = "capability"
    PERMISSION = "permission"
    UNKNOWN = "unknown"


class RetryStrategy(str, Enum):
    """Retry strategies ordered from least to most intrusive."""

    SAME_APPROACH = "same_approach"
    PARAMETER_ADJUST = "parameter_adjust"
    ALTERNATIVE_TOOL = "alternative_tool"
    MODEL_UPGRADE = "model_upgrade"
    DECOMPOSE_FURTHER = "decompose_further"
    HUMAN_GUIDANCE = "human_guidance"


RETRY_STRATEGY_ORDER: tuple[RetryStrategy, ...] = tuple(RetryStrategy)


class EscalationStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class EscalationSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    EscalationSeverity.LOW: 1,
    EscalationSeverity.MEDIUM: 2,
    EscalationSeverity.HIGH: 3,
    EscalationSeverity.CRITICAL: 4,
}


class EscalationType(str, Enum):
    RETRIES_EXHAUSTED = "retries_exhausted"
    RESOURCE = "resource"
    PERMISSION = "permission"
    CAPABILITY = "capability"
    VALIDATION_FAILED = "validation_failed"
    STUCK = "stuck"
    AMBIGUOUS = "ambiguous"
    RISK = "risk"
    CREDENTIAL = "credential"


class ResolutionAction(str, Enum):
    """Actions a human can take when closing an escalation."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    MODIFY_AND_RETRY = "modify_and_retry"
    ALTERNATIVE_APPROACH = "alternative_approach"


class AbortScope(str, Enum):
    GOAL = "goal"
    WORK_ITEM = "work_item"
    RUN = "run"


class ModelTier(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class BudgetWarningLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"

    @property
    def rank(self) -> int:
        return _WARNING_RANK[self]


_WARNING_RANK = {
    BudgetWarningLevel.NONE: 0,
    BudgetWarningLevel.WARNING: 1,
    BudgetWarningLevel.CRITICAL: 2,
    BudgetWarningLevel.EXCEEDED: 3,
}


class SchedulerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    DEGRADED = "degraded"
    STOPPED = "stopped"


DEFAULT_ESTIMATED_TOKENS: dict[EffortEstimate, int] = {
    EffortEstimate.S: 2_000,
    EffortEstimate.M: 8_000,
    EffortEstimate.L: 20_000,
    EffortEstimate.XL: 50_000,
}


@dataclass(slots=True)
class SuccessCriterion:
    description: str
    verified: bool = False


@dataclass(slots=True)
class GoalCreate:
    """Input payload for a new goal."""

    title: str
    description: str = ""
    goal_id: str | None = None
    priority: int = 50
    success_criteria: list[SuccessCriterion] = field(default_factory=list)
    budget_tokens: int | None = None
    budget_time_seconds: float | None = None
    budget_cost_usd: float | None = None


@dataclass(slots=True)
class Goal:
    """Readable goal view for scheduler and CLI logic."""

    goal_id: str
    title: str
    description: str
    status: GoalStatus
    priority: int
    success_criteria: list[SuccessCriterion]
    budget_tokens: int | None
    budget_time_seconds: float | None
    budget_cost_usd: float | None
    spent_tokens: int
    spent_time_seconds: float
    spent_cost_usd: float
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for a new work item; token estimate defaults from effort."""

    goal_id: str
    title: str
    description: str = ""
    work_item_id: str | None = None
    item_type: WorkItemType = WorkItemType.CODE
    estimated_effort: EffortEstimate = EffortEstimate.M
    estimated_tokens: int | None = None
    estimated_cost_usd: float = 0.0
    priority: int = 50
    dependencies: tuple[str, ...] = ()
    max_retries: int = 3


@dataclass(slots=True)
class WorkItem:
    """Readable work item view."""

    work_item_id: str
    goal_id: str
    title: str
    description: str
    item_type: WorkItemType
    estimated_effort: EffortEstimate
    estimated_tokens: int
    estimated_cost_usd: float
    status: WorkItemStatus
    priority: int
    dependencies: tuple[str, ...]
    retry_count: int
    max_retries: int
    attempted_strategies: tuple[RetryStrategy, ...]
    next_strategy: RetryStrategy | None
    next_retry_at: datetime | None
    last_error: str | None
    last_error_category: FailureCategory | None
    verification_status: VerificationStatus
    skipped: bool
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class Run:
    """One execution attempt of a work item."""

    run_id: str
    work_item_id: str
    goal_id: str
    run_sequence: int
    model: str
    strategy: RetryStrategy
    status: RunStatus
    tokens_used: int
    cost_usd: float
    time_seconds: float
    artifacts: list[str]
    error_message: str | None
    error_category: FailureCategory | None
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class RunCompletion:
    """Terminal envelope written exactly once per run."""

    status: RunStatus
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    artifacts: list[str] = field(default_factory=list)
    error_message: str | None = None
    error_category: FailureCategory | None = None


@dataclass(slots=True)
class EscalationCreate:
    goal_id: str
    escalation_type: EscalationType
    severity: EscalationSeverity
    title: str
    description: str = ""
    work_item_id: str | None = None
    run_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Escalation:
    """Persisted request for a human decision."""

    escalation_id: str
    goal_id: str
    work_item_id: str | None
    run_id: str | None
    escalation_type: EscalationType
    severity: EscalationSeverity
    status: EscalationStatus
    title: str
    description: str
    context: dict[str, Any]
    resolution_action: ResolutionAction | None
    resolution_data: dict[str, Any]
    resolver: str | None
    dismiss_reason: str | None
    resolution_applied: bool
    acknowledged_by: str | None
    created_at: datetime
    acknowledged_at: datetime | None
    resolved_at: datetime | None

    @property
    def is_blocking(self) -> bool:
        return self.status in {EscalationStatus.OPEN, EscalationStatus.ACKNOWLEDGED}


@dataclass(slots=True)
class SchedulerEventView:
    """Audit trail entry."""

    event_id: int
    goal_id: str | None
    entity_type: str
    entity_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    """Successful result variant."""

    value: T


@dataclass(slots=True, frozen=True)
class Err:
    """Failed result variant; ``kind`` is None when the failure is not pre-classified."""

    kind: FailureCategory | None
    detail: str


Result = Ok[T] | Err
