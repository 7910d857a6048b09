"""Hierarchical cancellation registry (goal -> work item -> run)."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from goal_autopilot.scheduler.events import EventBus
from goal_autopilot.scheduler.models import AbortScope
from goal_autopilot.storage.common import utc_now

logger = logging.getLogger(__name__)

PARENT_SCOPE: dict[AbortScope, AbortScope | None] = {
    AbortScope.GOAL: None,
    AbortScope.WORK_ITEM: AbortScope.GOAL,
    AbortScope.RUN: AbortScope.WORK_ITEM,
}

TIMEOUT_REASON = "timeout"
_HISTORY_LIMIT = 1_000

ScopeKey = tuple[AbortScope, str]


class AbortRegistrationError(RuntimeError):
    """Scope is already registered."""


class CancellationHandle:
    """Cooperative cancellation signal handed to whoever executes a scope."""

    __slots__ = ("_event", "actor", "reason", "scope", "scope_id")

    def __init__(self, scope: AbortScope, scope_id: str) -> None:
        self.scope = scope
        self.scope_id = scope_id
        self.reason: str | None = None
        self.actor: str | None = None
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; True if cancelled."""

        return self._event.wait(timeout)

    def cancel(self, *, reason: str, actor: str) -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self.actor = actor
        self._event.set()
        return True


@dataclass(slots=True)
class AbortRegistration:
    scope: AbortScope
    scope_id: str
    parent_id: str | None
    handle: CancellationHandle
    timeout_seconds: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    timer: threading.Timer | None = None


@dataclass(slots=True)
class AbortContext:
    """What happened to an aborted scope."""

    scope: AbortScope
    scope_id: str
    reason: str
    actor: str
    aborted_at: datetime
    cascade_count: int


@dataclass(slots=True)
class AbortStats:
    active_by_scope: dict[str, int]
    total_aborted: int
    timeouts: int


class AbortManager:
    """Registry of live cancellation scopes.

    Registrations live in a flat arena keyed by ``(scope, id)``; ``parent_id``
    is a lookup reference resolved through ``PARENT_SCOPE``, with a separate
    parent -> children index used for cascades.
    """

    def __init__(self, *, events: EventBus | None = None) -> None:
        self.events = events or EventBus()
        self._lock = threading.RLock()
        self._registrations: dict[ScopeKey, AbortRegistration] = {}
        self._children: dict[ScopeKey, set[ScopeKey]] = {}
        self._history: OrderedDict[ScopeKey, AbortContext] = OrderedDict()
        self._total_aborted = 0
        self._timeouts = 0

    def register(
        self,
        scope: AbortScope,
        scope_id: str,
        *,
        parent_id: str | None = None,
        timeout_seconds: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CancellationHandle:
        """Create a scope; raises if ``(scope, scope_id)`` is already live."""

        key = (scope, scope_id)
        with self._lock:
            if key in self._registrations:
                raise AbortRegistrationError(
                    f"Abort scope already registered: {scope.value}:{scope_id}",
                )
            if parent_id is not None and PARENT_SCOPE[scope] is None:
                raise ValueError(f"Scope {scope.value} cannot have a parent.")

            handle = CancellationHandle(scope, scope_id)
            registration = AbortRegistration(
                scope=scope,
                scope_id=scope_id,
                parent_id=parent_id,
                handle=handle,
                timeout_seconds=timeout_seconds,
                metadata=dict(metadata or {}),
            )
            if timeout_seconds is not None:
                timer = threading.Timer(
                    timeout_seconds,
                    self._on_timeout,
                    args=(scope, scope_id, handle),
                )
                timer.daemon = True
                registration.timer = timer
            self._registrations[key] = registration
            self._history.pop(key, None)
            parent_key = self._parent_key(registration)
            if parent_key is not None:
                self._children.setdefault(parent_key, set()).add(key)
            if registration.timer is not None:
                registration.timer.start()
        logger.debug("Registered abort scope %s:%s parent=%s", scope.value, scope_id, parent_id)
        return handle

    def abort(self, scope: AbortScope, scope_id: str, reason: str, actor: str = "system") -> int:
        """Cancel a scope and all its live descendants.

        Returns how many scopes were aborted, the scope itself included;
        0 when the scope is not registered.
        """

        key = (scope, scope_id)
        with self._lock:
            registration = self._registrations.get(key)
            if registration is None:
                return 0
            self.events.publish(
                "abort_requested",
                scope=scope.value,
                scope_id=scope_id,
                reason=reason,
                actor=actor,
            )
            registration.handle.cancel(reason=reason, actor=actor)
            _cancel_timer(registration)
            count = 1 + self.abort_children(scope, scope_id, reason, actor)
            self._remove(key)
            self._total_aborted += 1
            self._history[key] = AbortContext(
                scope=scope,
                scope_id=scope_id,
                reason=reason,
                actor=actor,
                aborted_at=utc_now(),
                cascade_count=count,
            )
            while len(self._history) > _HISTORY_LIMIT:
                self._history.popitem(last=False)
            self.events.publish(
                "abort_completed",
                scope=scope.value,
                scope_id=scope_id,
                reason=reason,
                actor=actor,
                count=count,
            )
        logger.info(
            "Aborted %s:%s reason=%s actor=%s count=%d",
            scope.value,
            scope_id,
            reason,
            actor,
            count,
        )
        return count

    def abort_children(
        self,
        parent_scope: AbortScope,
        parent_id: str,
        reason: str,
        actor: str = "system",
    ) -> int:
        with self._lock:
            child_keys = sorted(
                self._children.get((parent_scope, parent_id), set()),
                key=lambda item: (item[0].value, item[1]),
            )
            count = 0
            for child_scope, child_id in child_keys:
                self.events.publish(
                    "abort_cascade",
                    parent_scope=parent_scope.value,
                    parent_id=parent_id,
                    scope=child_scope.value,
                    scope_id=child_id,
                    reason=reason,
                )
                count += self.abort(child_scope, child_id, reason, actor)
            return count

    def unregister(self, scope: AbortScope, scope_id: str) -> bool:
        key = (scope, scope_id)
        with self._lock:
            registration = self._registrations.get(key)
            if registration is None:
                return False
            _cancel_timer(registration)
            self._remove(key)
            return True

    def is_aborted(self, scope: AbortScope, scope_id: str) -> bool:
        key = (scope, scope_id)
        with self._lock:
            registration = self._registrations.get(key)
            if registration is not None:
                return registration.handle.is_cancelled
            return key in self._history

    def is_registered(self, scope: AbortScope, scope_id: str) -> bool:
        with self._lock:
            return (scope, scope_id) in self._registrations

    def get_handle(self, scope: AbortScope, scope_id: str) -> CancellationHandle | None:
        with self._lock:
            registration = self._registrations.get((scope, scope_id))
            return registration.handle if registration is not None else None

    def abort_context(self, scope: AbortScope, scope_id: str) -> AbortContext | None:
        with self._lock:
            return self._history.get((scope, scope_id))

    def active_registrations(self, scope: AbortScope | None = None) -> list[AbortRegistration]:
        with self._lock:
            return [
                registration
                for registration in self._registrations.values()
                if scope is None or registration.scope == scope
            ]

    def stats(self) -> AbortStats:
        with self._lock:
            active: dict[str, int] = {item.value: 0 for item in AbortScope}
            for scope, _ in self._registrations:
                active[scope.value] += 1
            return AbortStats(
                active_by_scope=active,
                total_aborted=self._total_aborted,
                timeouts=self._timeouts,
            )

    def shutdown(self) -> None:
        """Cancel all pending timeout timers."""

        with self._lock:
            for registration in self._registrations.values():
                _cancel_timer(registration)

    def _on_timeout(self, scope: AbortScope, scope_id: str, handle: CancellationHandle) -> None:
        with self._lock:
            registration = self._registrations.get((scope, scope_id))
            # the scope may have been re-registered since this timer was armed
            if registration is None or registration.handle is not handle:
                return
            self._timeouts += 1
            self.events.publish(
                "abort_timeout",
                scope=scope.value,
                scope_id=scope_id,
                timeout_seconds=registration.timeout_seconds,
            )
            registration.timer = None
            self.abort(scope, scope_id, TIMEOUT_REASON, "system")

    def _remove(self, key: ScopeKey) -> None:
        registration = self._registrations.pop(key, None)
        if registration is None:
            return
        parent_key = self._parent_key(registration)
        if parent_key is None:
            return
        siblings = self._children.get(parent_key)
        if siblings is None:
            return
        siblings.discard(key)
        if not siblings:
            del self._children[parent_key]

    @staticmethod
    def _parent_key(registration: AbortRegistration) -> ScopeKey | None:
        parent_scope = PARENT_SCOPE[registration.scope]
        if parent_scope is None or registration.parent_id is None:
            return None
        return (parent_scope, registration.parent_id)


def _cancel_timer(registration: AbortRegistration) -> None:
    if registration.timer is None:
        return
    registration.timer.cancel()
    registration.timer = None
