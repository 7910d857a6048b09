"""Escalation lifecycle: creation, human actions and goal blocking checks."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from goal_autopilot.scheduler.events import EventBus
from goal_autopilot.scheduler.models import (
    Escalation,
    EscalationCreate,
    EscalationStatus,
    EscalationType,
    ResolutionAction,
)
from goal_autopilot.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)

ESCALATION_TRANSITIONS: dict[EscalationStatus, frozenset[EscalationStatus]] = {
    EscalationStatus.OPEN: frozenset(
        {
            EscalationStatus.ACKNOWLEDGED,
            EscalationStatus.RESOLVED,
            EscalationStatus.DISMISSED,
        },
    ),
    EscalationStatus.ACKNOWLEDGED: frozenset(
        {EscalationStatus.RESOLVED, EscalationStatus.DISMISSED},
    ),
    EscalationStatus.RESOLVED: frozenset(),
    EscalationStatus.DISMISSED: frozenset(),
}
BLOCKING_STATUSES = (EscalationStatus.OPEN, EscalationStatus.ACKNOWLEDGED)

_CAS_ATTEMPTS = 3


class EscalationNotFoundError(RuntimeError):
    """Escalation id is unknown."""


class EscalationStateError(RuntimeError):
    """Requested action conflicts with the escalation's current state."""


@dataclass(slots=True)
class EscalationStats:
    total: int = 0
    blocking: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)


class EscalationHandler:
    """Owns human-visible escalations and answers whether a goal may proceed.

    Actions are idempotent per escalation id: repeating the action that
    closed an escalation returns the stored record, while a different
    action on a closed escalation raises ``EscalationStateError``.
    """

    def __init__(self, repository: SchedulerRepository, *, events: EventBus | None = None) -> None:
        self.repository = repository
        self.events = events or EventBus()

    def create_escalation(self, payload: EscalationCreate) -> Escalation:
        escalation = self.repository.create_escalation(payload)
        logger.warning(
            "Escalation %s created: goal=%s work_item=%s type=%s severity=%s title=%s",
            escalation.escalation_id,
            escalation.goal_id,
            escalation.work_item_id,
            escalation.escalation_type.value,
            escalation.severity.value,
            escalation.title,
        )
        self.events.publish(
            "escalation_created",
            escalation_id=escalation.escalation_id,
            goal_id=escalation.goal_id,
            work_item_id=escalation.work_item_id,
            escalation_type=escalation.escalation_type.value,
            severity=escalation.severity.value,
        )
        return escalation

    def acknowledge_escalation(self, escalation_id: str, actor: str) -> Escalation:
        return self._apply(
            escalation_id,
            EscalationStatus.ACKNOWLEDGED,
            actor=actor,
            event_type="escalation_acknowledged",
        )

    def resolve_escalation(
        self,
        escalation_id: str,
        *,
        action: ResolutionAction,
        resolver: str,
        data: dict[str, Any] | None = None,
    ) -> Escalation:
        return self._apply(
            escalation_id,
            EscalationStatus.RESOLVED,
            actor=resolver,
            event_type="escalation_resolved",
            action=action,
            data=data or {},
        )

    def dismiss_escalation(
        self,
        escalation_id: str,
        *,
        reason: str,
        actor: str = "system",
    ) -> Escalation:
        return self._apply(
            escalation_id,
            EscalationStatus.DISMISSED,
            actor=actor,
            event_type="escalation_dismissed",
            reason=reason,
        )

    def get_escalation(self, escalation_id: str) -> Escalation:
        escalation = self.repository.get_escalation(escalation_id)
        if escalation is None:
            raise EscalationNotFoundError(f"Escalation not found: {escalation_id}")
        return escalation

    def list_escalations(
        self,
        *,
        goal_id: str | None = None,
        statuses: tuple[EscalationStatus, ...] | None = None,
        escalation_type: EscalationType | None = None,
        limit: int = 100,
    ) -> list[Escalation]:
        return self.repository.list_escalations(
            goal_id=goal_id,
            statuses=statuses,
            escalation_type=escalation_type,
            limit=limit,
        )

    def get_pending_escalations(self, goal_id: str | None = None) -> list[Escalation]:
        """Open and acknowledged escalations, most severe first, then newest."""

        pending = self.repository.list_escalations(
            goal_id=goal_id,
            statuses=BLOCKING_STATUSES,
            limit=10_000,
        )
        return sorted(
            pending,
            key=lambda item: (item.severity.rank, item.created_at),
            reverse=True,
        )

    def has_blocking_escalations(self, goal_id: str) -> bool:
        return bool(
            self.repository.list_escalations(
                goal_id=goal_id,
                statuses=BLOCKING_STATUSES,
                limit=1,
            ),
        )

    def get_highest_severity_escalation(self, goal_id: str) -> Escalation | None:
        pending = self.get_pending_escalations(goal_id)
        return pending[0] if pending else None

    def stats(self, goal_id: str | None = None) -> EscalationStats:
        escalations = self.repository.list_escalations(goal_id=goal_id, limit=100_000)
        return EscalationStats(
            total=len(escalations),
            blocking=sum(1 for item in escalations if item.is_blocking),
            by_status=dict(Counter(item.status.value for item in escalations)),
            by_type=dict(Counter(item.escalation_type.value for item in escalations)),
            by_severity=dict(Counter(item.severity.value for item in escalations)),
        )

    def _apply(  # noqa: PLR0913
        self,
        escalation_id: str,
        target: EscalationStatus,
        *,
        actor: str,
        event_type: str,
        action: ResolutionAction | None = None,
        data: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> Escalation:
        for _ in range(_CAS_ATTEMPTS):
            current = self.get_escalation(escalation_id)
            if _already_applied(current, target, action):
                return current
            if target not in ESCALATION_TRANSITIONS[current.status]:
                raise EscalationStateError(
                    f"Cannot move escalation {escalation_id} from "
                    f"{current.status.value} to {target.value}",
                )
            updated = self.repository.update_escalation(
                escalation_id=escalation_id,
                expected=current.status,
                status=target,
                actor=actor,
                resolution_action=action,
                resolution_data=data,
                dismiss_reason=reason,
            )
            if not updated:
                # lost a race with another actor; re-read and re-evaluate
                continue
            escalation = self.get_escalation(escalation_id)
            logger.info(
                "Escalation %s %s by %s (action=%s)",
                escalation_id,
                target.value,
                actor,
                action.value if action else None,
            )
            self.events.publish(
                event_type,
                escalation_id=escalation_id,
                goal_id=escalation.goal_id,
                work_item_id=escalation.work_item_id,
                actor=actor,
                action=action.value if action else None,
            )
            return escalation
        raise EscalationStateError(
            f"Escalation {escalation_id} kept changing while applying {target.value}",
        )


def _already_applied(
    escalation: Escalation,
    target: EscalationStatus,
    action: ResolutionAction | None,
) -> bool:
    if escalation.status != target:
        return False
    if target == EscalationStatus.RESOLVED:
        return escalation.resolution_action == action
    return True
