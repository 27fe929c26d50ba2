"""
Status Transition Engine - Milestone and Task lifecycles.

Two entry points per entity:

    can_transition_*   (allowed, reason) without touching the entity
    transition_*       apply an explicit request, raise StateError if denied

plus ``evaluate_milestone`` - the automatic cascade run after any task
change.  It recomputes progress, starts a pending milestone once work has
begun, and completes an in-progress milestone once progress is 100 and
the approval gate is cleared.  It never raises; a blocked step is
returned as ``blocked_reason``.

Guards:
    → in_progress   every finish_to_start / start_to_start predecessor satisfied
    → completed     progress 100, finish_to_finish / start_to_finish satisfied,
                    approval gate cleared, requester is the provider (or the engine)

The engine holds no storage handle.  Callers pass the predecessor
snapshot in the TransitionContext and persist whatever the engine mutated.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.core.exceptions import StateError
from app.models.milestone import (
    STATUSES,
    validate_milestone_transition,
    validate_task_transition,
)
from app.services.approval_gate import GATE_CLEARED, GATE_REJECTED
from app.services.dependency_graph import FINISH, START, unmet_constraints
from app.services.progress_calculator import compute_milestone_progress

logger = logging.getLogger(__name__)

_WORK_STARTED = {"in_progress", "completed"}


@dataclass
class TransitionContext:
    """
    Everything a guard needs besides the entity itself.

    ``role`` is None for engine-initiated transitions.  ``predecessors``
    holds ``(edge, predecessor)`` pairs for the edges whose source is the
    entity being evaluated.
    """

    role: str | None = None
    predecessors: list = field(default_factory=list)
    now: datetime | None = None

    def instant(self):
        return self.now or datetime.now(timezone.utc)


@dataclass
class TransitionResult:
    old_status: str
    new_status: str
    applied: bool = False
    blocked_reason: str | None = None
    pending_approval: bool = False

    def to_dict(self):
        return {
            "old_status": self.old_status,
            "new_status": self.new_status,
            "applied": self.applied,
            "blocked_reason": self.blocked_reason,
            "pending_approval": self.pending_approval,
        }


class StatusTransitionEngine:
    """
    Args:
        approval_gate: ApprovalGate deciding the completion sign-off.
        on_transition: Optional callable ``(entity, old_status, new_status)``
            invoked after every applied transition.
        allow_progress_drift: Revert a completed milestone to pending when
            its recomputed progress drops to 0.
        enforce_task_dependencies: Apply dependency guards to task transitions.
    """

    def __init__(
        self,
        approval_gate,
        on_transition=None,
        allow_progress_drift=False,
        enforce_task_dependencies=False,
    ):
        self.approval_gate = approval_gate
        self.on_transition = on_transition
        self.allow_progress_drift = allow_progress_drift
        self.enforce_task_dependencies = enforce_task_dependencies

    # ── Shared ───────────────────────────────────────────────────────────

    def _apply(self, entity, target, now):
        old = entity.status
        entity.status = target
        if target == "in_progress" and entity.started_at is None:
            entity.started_at = now
        if target == "completed":
            if entity.started_at is None:
                entity.started_at = now
            entity.completed_at = now
        elif old == "completed":
            entity.completed_at = None
        if self.on_transition is not None:
            self.on_transition(entity, old, target)
        return TransitionResult(old_status=old, new_status=target, applied=True)

    @staticmethod
    def _precheck(entity, target, validator, kind):
        if not isinstance(target, str) or target not in STATUSES:
            return f"Unknown status '{target}'"
        if entity.status == target:
            return f"{kind} is already '{target}'"
        if not validator(entity.status, target):
            return f"Cannot move {kind.lower()} from '{entity.status}' to '{target}'"
        return None

    # ── Milestone ────────────────────────────────────────────────────────

    def can_transition(self, milestone, target, ctx=None):
        """CanTransition(milestone, target, context) → (allowed, reason)."""
        ctx = ctx or TransitionContext()
        reason = self._precheck(milestone, target, validate_milestone_transition, "Milestone")
        if reason:
            return False, reason

        now = ctx.instant()
        if target == "in_progress":
            unmet = unmet_constraints(ctx.predecessors, START, now)
            if unmet:
                return False, "Locked by dependency: " + "; ".join(unmet)

        if target == "completed":
            if not self.approval_gate.may_request_completion(ctx.role):
                return False, f"Only the provider may complete a milestone (role={ctx.role!r})"
            progress = compute_milestone_progress(milestone)
            if progress < 100:
                return False, f"Cannot complete: progress is {progress}%"
            unmet = unmet_constraints(ctx.predecessors, FINISH, now)
            if unmet:
                return False, "Cannot finish: " + "; ".join(unmet)
            gate = self.approval_gate.status(milestone)
            if gate == GATE_REJECTED:
                feedback = self.approval_gate.rejection_feedback(milestone)
                msg = "Cannot complete: latest client approval was rejected"
                return False, f"{msg} ({feedback})" if feedback else msg
            if gate != GATE_CLEARED:
                return False, "Cannot complete: pending client approval"

        return True, None

    def transition_milestone(self, milestone, target, ctx=None):
        """Apply an explicit status request; raises StateError when denied."""
        ctx = ctx or TransitionContext()
        allowed, reason = self.can_transition(milestone, target, ctx)
        if not allowed:
            raise StateError(reason, current=milestone.status, target=target)
        return self._apply(milestone, target, ctx.instant())

    def evaluate_milestone(self, milestone, ctx=None):
        """
        Automatic cascade after a task change.

        Writes ``progress_percentage`` and at most two status steps
        (pending → in_progress → completed).  Returns the combined result.
        """
        ctx = ctx or TransitionContext()
        engine_ctx = TransitionContext(role=None, predecessors=ctx.predecessors, now=ctx.now)
        now = engine_ctx.instant()

        progress = compute_milestone_progress(milestone)
        milestone.progress_percentage = progress
        result = TransitionResult(old_status=milestone.status, new_status=milestone.status)

        if milestone.status == "completed":
            if progress == 0 and self.allow_progress_drift:
                self._apply(milestone, "pending", now)
                result.applied = True
                result.new_status = "pending"
                logger.info("Milestone id=%s drifted completed → pending (progress 0)", milestone.id)
            return result

        if milestone.status == "pending":
            if not any(t.status in _WORK_STARTED for t in milestone.tasks):
                return result
            allowed, reason = self.can_transition(milestone, "in_progress", engine_ctx)
            if not allowed:
                result.blocked_reason = reason
                logger.info("Milestone id=%s auto-start blocked: %s", milestone.id, reason)
                return result
            self._apply(milestone, "in_progress", now)
            result.applied = True
            result.new_status = "in_progress"

        if milestone.status == "in_progress" and progress == 100:
            allowed, reason = self.can_transition(milestone, "completed", engine_ctx)
            if allowed:
                self._apply(milestone, "completed", now)
                result.applied = True
                result.new_status = "completed"
            else:
                result.blocked_reason = reason
                result.pending_approval = self.approval_gate.pending_approval(milestone, progress)
                logger.info("Milestone id=%s auto-complete blocked: %s", milestone.id, reason)

        return result

    # ── Task ─────────────────────────────────────────────────────────────

    def can_transition_task(self, task, target, ctx=None):
        ctx = ctx or TransitionContext()
        reason = self._precheck(task, target, validate_task_transition, "Task")
        if reason:
            return False, reason
        if not self.enforce_task_dependencies:
            return True, None

        now = ctx.instant()
        events = []
        if target in _WORK_STARTED and task.status not in _WORK_STARTED:
            events.append(START)
        if target == "completed":
            events.append(FINISH)
        for event in events:
            unmet = unmet_constraints(ctx.predecessors, event, now)
            if unmet:
                prefix = "Locked by dependency" if event == START else "Cannot finish"
                return False, f"{prefix}: " + "; ".join(unmet)
        return True, None

    def transition_task(self, task, target, ctx=None):
        """Apply a task status change; the caller re-evaluates the owning milestone."""
        ctx = ctx or TransitionContext()
        allowed, reason = self.can_transition_task(task, target, ctx)
        if not allowed:
            raise StateError(reason, current=task.status, target=target)
        return self._apply(task, target, ctx.instant())
