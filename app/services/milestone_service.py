"""
Milestone Engine - Service Layer.

Loads entities, runs the pure engine modules against them and commits the
outcome as one transaction.  Blueprints call these functions and never
touch the ORM directly.

Business logic for:
    - Milestone / Task CRUD with progress recomputation on every task change
    - Explicit milestone and task transitions (guarded by the transition engine)
    - Dependency insertion / removal with cycle rejection (milestone and task scope)
    - Client approvals (append-only) and the completion cascade they trigger
    - Sequence: reorder, move up/down, version token, gap repair after delete
    - Read models: progress summaries, critical path, approval history, comments

Every guard runs before the session is modified, so a raised
ValidationError / StateError / NotFoundError leaves storage untouched.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from app.models import db
from app.models.milestone import (
    PRIORITIES,
    RISK_LEVELS,
    ROLES,
    Milestone,
    MilestoneApproval,
    MilestoneComment,
    MilestoneDependency,
    Task,
    TaskDependency,
)
from app.services import sequence_manager
from app.services.approval_gate import ApprovalGate, approval_history, latest_approval
from app.services.dependency_graph import DependencyGraph, Edge
from app.services.progress_calculator import (
    compute_booking_progress,
    compute_milestone_progress,
    task_counts,
)
from app.services.status_transitions import StatusTransitionEngine, TransitionContext
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

_MILESTONE_UPDATABLE = (
    "title", "description", "priority", "risk_level",
    "start_date", "due_date", "estimated_hours", "actual_hours", "weight",
)
_TASK_UPDATABLE = (
    "title", "description", "priority", "due_date",
    "estimated_hours", "actual_hours", "weight", "order_index",
)
_DATE_FIELDS = {"start_date", "due_date"}
_NUMERIC_FIELDS = {"estimated_hours", "actual_hours"}


# ── Engine wiring ────────────────────────────────────────────────────────────


def _log_transition(entity, old, new):
    logger.info("%s transitioned id=%s %s → %s", type(entity).__name__, entity.id, old, new)


def _log_approval(milestone, approval):
    logger.info(
        "MilestoneApproval recorded milestone_id=%s status=%s",
        milestone.id, approval.status,
    )


def build_engine(require_approval=None):
    """Transition engine configured from the app config (no global state)."""
    cfg = current_app.config
    if require_approval is None:
        require_approval = cfg.get("REQUIRE_APPROVAL", True)
    gate = ApprovalGate(require_approval=require_approval, on_submitted=_log_approval)
    return StatusTransitionEngine(
        gate,
        on_transition=_log_transition,
        allow_progress_drift=cfg.get("ALLOW_PROGRESS_DRIFT", False),
        enforce_task_dependencies=cfg.get("ENFORCE_TASK_DEPENDENCIES", False),
    )


def _context(entity, role=None):
    """Predecessor snapshot for one milestone or task."""
    return TransitionContext(
        role=role,
        predecessors=[(edge, edge.depends_on) for edge in entity.dependencies],
    )


def _persist(action):
    """Run a flush or commit, translating optimistic-lock and constraint failures."""
    try:
        action()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent write rejected: %s", exc)
        raise ConcurrencyConflict(
            "The milestone was modified by another request; reload and retry"
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise ConflictError("Record", "constraint", str(exc.orig)) from exc


def _commit():
    _persist(db.session.commit)


def _flush():
    _persist(db.session.flush)


def _check_version(milestone, expected_version):
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError) as exc:
        raise ValidationError("expected_version must be an integer") from exc
    if milestone.version != expected:
        logger.warning(
            "Stale milestone version id=%s expected=%s current=%s",
            milestone.id, expected, milestone.version,
        )
        raise ConcurrencyConflict(
            f"Milestone id={milestone.id} is at version {milestone.version}, "
            f"not {expected}"
        )


# ── Input helpers ────────────────────────────────────────────────────────────


def _weight(value):
    if value is None:
        return 1.0
    try:
        w = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("weight must be a number", details={"weight": str(value)}) from exc
    if w <= 0:
        raise ValidationError("weight must be greater than 0", details={"weight": str(value)})
    return w


def _hours(field, value):
    if value is None:
        return 0.0
    try:
        h = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be a number", details={field: str(value)}) from exc
    if h < 0:
        raise ValidationError(f"{field} must be >= 0", details={field: str(value)})
    return h


def _whole_number(field, value):
    """Integer input; bools and fractional floats are rejected, not truncated."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be an integer", details={field: str(value)})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: str(value)}) from exc


def _choice(field, value, allowed):
    if not isinstance(value, str) or value not in allowed:
        raise ValidationError(
            f"Invalid {field} '{value}'",
            details={field: sorted(allowed)},
        )
    return value


def _clean(data, fields):
    """Validate and convert whitelisted fields present in ``data``."""
    out = {}
    for f in fields:
        if f not in data:
            continue
        val = data[f]
        if f == "title":
            val = str(val or "").strip()
            if not val:
                raise ValidationError("title must not be empty")
        elif f == "priority":
            val = _choice("priority", val, PRIORITIES)
        elif f == "risk_level":
            val = _choice("risk_level", val, RISK_LEVELS)
        elif f == "weight":
            val = _weight(val)
        elif f in _NUMERIC_FIELDS:
            val = _hours(f, val)
        elif f in _DATE_FIELDS:
            parsed = parse_date(val)
            if parsed is None and val not in (None, ""):
                raise ValidationError(f"{f} must be an ISO date", details={f: str(val)})
            val = parsed
        elif f == "order_index":
            val = _whole_number("order_index", val)
            if val < 0:
                raise ValidationError("order_index must be >= 0")
        out[f] = val
    return out


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_milestone(milestone_id) -> Milestone:
    milestone = db.session.get(Milestone, milestone_id)
    if milestone is None:
        raise NotFoundError("Milestone", milestone_id)
    return milestone


def get_task(task_id) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError("Task", task_id)
    return task


def _booking_milestones(booking_id, lock=False):
    query = Milestone.query.filter_by(booking_id=booking_id)
    if lock:
        query = query.with_for_update()
    return query.order_by(Milestone.order_index, Milestone.id).all()


def _booking_tasks(booking_id):
    return (
        Task.query
        .join(Milestone, Task.milestone_id == Milestone.id)
        .filter(Milestone.booking_id == booking_id)
        .all()
    )


# ── Read models ──────────────────────────────────────────────────────────────


def _durations(milestones):
    """Milestone duration: its own estimate, else the sum of its task estimates."""
    out = {}
    for m in milestones:
        hours = m.estimated_hours or 0.0
        if hours <= 0:
            hours = sum(t.estimated_hours or 0.0 for t in m.tasks)
        out[m.id] = hours
    return out


def _critical_ids(milestones):
    graph = DependencyGraph.from_entities(milestones)
    return graph.critical_path(_durations(milestones))


def serialize_milestone(milestone, engine=None, critical_ids=None, include_children=False):
    """Milestone dict plus the derived, never-stored read fields."""
    engine = engine or build_engine()
    gate = engine.approval_gate
    if critical_ids is None:
        critical_ids = _critical_ids(_booking_milestones(milestone.booking_id))

    progress = compute_milestone_progress(milestone)
    latest = latest_approval(milestone.approvals)
    result = milestone.to_dict(include_children=include_children)
    result.update({
        "progress_percentage": progress,
        "critical_path": milestone.id in critical_ids,
        "approval_state": gate.status(milestone),
        "pending_approval": gate.pending_approval(milestone, progress),
        "latest_approval": latest.to_dict() if latest else None,
        "rejection_feedback": gate.rejection_feedback(milestone),
    })
    return result


def list_milestones(booking_id) -> list[dict]:
    """Milestones of a booking in sequence order, with derived fields."""
    milestones = _booking_milestones(booking_id)
    engine = build_engine()
    critical = _critical_ids(milestones)
    return [serialize_milestone(m, engine, critical) for m in milestones]


def milestone_progress(milestone_id) -> dict:
    milestone = get_milestone(milestone_id)
    gate = build_engine().approval_gate
    progress = compute_milestone_progress(milestone)
    return {
        "milestone_id": milestone.id,
        "status": milestone.status,
        "progress_percentage": progress,
        "tasks": task_counts(milestone.tasks),
        "approval_state": gate.status(milestone),
        "pending_approval": gate.pending_approval(milestone, progress),
    }


def progress_summary(booking_id) -> dict:
    """Booking-level rollup: overall %, counts, hours, per-milestone state."""
    milestones = _booking_milestones(booking_id)
    engine = build_engine()
    gate = engine.approval_gate
    critical = _critical_ids(milestones)

    rows = []
    total_tasks = completed_tasks = 0
    estimated = actual = 0.0
    for m in milestones:
        progress = compute_milestone_progress(m)
        counts = task_counts(m.tasks)
        total_tasks += counts["total"]
        completed_tasks += counts["completed"]
        estimated += m.estimated_hours or 0.0
        actual += m.actual_hours or 0.0
        rows.append({
            "id": m.id,
            "title": m.title,
            "order_index": m.order_index,
            "status": m.status,
            "progress_percentage": progress,
            "pending_approval": gate.pending_approval(m, progress),
            "critical_path": m.id in critical,
        })

    return {
        "booking_id": booking_id,
        "progress_percentage": compute_booking_progress(milestones),
        "milestones_total": len(milestones),
        "milestones_completed": sum(1 for m in milestones if m.status == "completed"),
        "tasks_total": total_tasks,
        "tasks_completed": completed_tasks,
        "estimated_hours": estimated,
        "actual_hours": actual,
        "milestones": rows,
    }


def critical_path(booking_id) -> dict:
    milestones = _booking_milestones(booking_id)
    graph = DependencyGraph.from_entities(milestones)
    durations = _durations(milestones)
    ids = graph.critical_path(durations)
    return {
        "booking_id": booking_id,
        "critical_path": [m.id for m in milestones if m.id in ids],
        "longest_chain_hours": graph.longest_chain(durations),
    }


# ── Milestone CRUD ───────────────────────────────────────────────────────────


def create_milestone(booking_id, data: dict) -> Milestone:
    """Create a pending milestone appended at the end of the booking's sequence."""
    if not booking_id:
        raise ValidationError("booking_id is required")
    fields = _clean(data, _MILESTONE_UPDATABLE)
    if "title" not in fields:
        raise ValidationError("title is required")

    siblings = _booking_milestones(booking_id, lock=True)
    milestone = Milestone(
        booking_id=str(booking_id),
        status="pending",
        progress_percentage=0,
        order_index=sequence_manager.next_order_index(siblings),
        **fields,
    )
    db.session.add(milestone)
    _commit()
    logger.info(
        "Milestone created id=%s booking_id=%s order_index=%s",
        milestone.id, milestone.booking_id, milestone.order_index,
    )
    return milestone


def update_milestone(milestone_id, data: dict, expected_version=None) -> Milestone:
    """Update whitelisted fields; status, progress and order have their own operations."""
    milestone = get_milestone(milestone_id)
    _check_version(milestone, expected_version)
    fields = _clean(data, _MILESTONE_UPDATABLE)
    for f, val in fields.items():
        setattr(milestone, f, val)
    _commit()
    logger.info("Milestone updated id=%s", milestone.id)
    return milestone


def delete_milestone(milestone_id) -> None:
    """
    Delete a milestone with its tasks, approvals, comments and every edge
    touching it, then close the gap in the booking's sequence.
    """
    milestone = get_milestone(milestone_id)
    booking_id = milestone.booking_id
    siblings = _booking_milestones(booking_id, lock=True)

    db.session.delete(milestone)
    db.session.flush()
    remaining = [m for m in siblings if m.id != milestone_id]
    changed = sequence_manager.normalize(remaining)
    _commit()
    logger.info(
        "Milestone deleted id=%s booking_id=%s reindexed=%s",
        milestone_id, booking_id, len(changed),
    )


# ── Milestone transitions ────────────────────────────────────────────────────


def can_transition_milestone(milestone_id, status, role=None) -> dict:
    milestone = get_milestone(milestone_id)
    allowed, reason = build_engine().can_transition(milestone, status, _context(milestone, role))
    return {"allowed": allowed, "reason": reason}


def transition_milestone(milestone_id, status, role=None, expected_version=None) -> dict:
    """Explicit status request; raises StateError with the denial reason."""
    milestone = get_milestone(milestone_id)
    _check_version(milestone, expected_version)
    engine = build_engine()
    result = engine.transition_milestone(milestone, status, _context(milestone, role))
    milestone.progress_percentage = compute_milestone_progress(milestone)
    _commit()
    return {
        "milestone": serialize_milestone(milestone, engine),
        "transition": result.to_dict(),
    }


def _reevaluate(milestone, engine):
    result = engine.evaluate_milestone(milestone, _context(milestone))
    if result.blocked_reason:
        logger.info(
            "Milestone id=%s stays %s: %s",
            milestone.id, milestone.status, result.blocked_reason,
        )
    return result


def evaluate_milestone(milestone_id) -> dict:
    """Re-run the automatic cascade (progress + status) for one milestone."""
    milestone = get_milestone(milestone_id)
    engine = build_engine()
    result = _reevaluate(milestone, engine)
    _commit()
    return {
        "milestone": serialize_milestone(milestone, engine),
        "cascade": result.to_dict(),
    }


# ── Tasks ────────────────────────────────────────────────────────────────────


def list_tasks(milestone_id) -> list[Task]:
    return list(get_milestone(milestone_id).tasks)


def _place_task(milestone, task=None, position=None):
    """
    Renumber the milestone's tasks to 0..N-1.

    When ``task`` and ``position`` are given the task is moved to that slot
    (clamped to the end) and its siblings shift around it.
    """
    siblings = sorted(
        (t for t in milestone.tasks if t is not task),
        key=lambda t: (t.order_index, t.id or 0),
    )
    if task is not None:
        slot = len(siblings) if position is None else min(position, len(siblings))
        siblings.insert(slot, task)
    for idx, sibling in enumerate(siblings):
        sibling.order_index = idx


def create_task(milestone_id, data: dict) -> Task:
    """Create a pending task, appended unless ``order_index`` names a slot."""
    milestone = get_milestone(milestone_id)
    fields = _clean(data, _TASK_UPDATABLE)
    if "title" not in fields:
        raise ValidationError("title is required")
    position = fields.pop("order_index", None)

    task = Task(status="pending", order_index=len(milestone.tasks), **fields)
    milestone.tasks.append(task)
    _place_task(milestone, task, position)
    _reevaluate(milestone, build_engine())
    _commit()
    logger.info("Task created id=%s milestone_id=%s", task.id, milestone.id)
    return task


def update_task(task_id, data: dict) -> Task:
    task = get_task(task_id)
    fields = _clean(data, _TASK_UPDATABLE)
    position = fields.pop("order_index", None)
    for f, val in fields.items():
        setattr(task, f, val)
    if position is not None:
        _place_task(task.milestone, task, position)
    if "weight" in fields:
        _reevaluate(task.milestone, build_engine())
    _commit()
    logger.info("Task updated id=%s", task.id)
    return task


def delete_task(task_id) -> dict:
    """Delete a task (and its edges); the owning milestone is re-evaluated."""
    task = get_task(task_id)
    milestone = task.milestone
    milestone.tasks.remove(task)
    _place_task(milestone)
    engine = build_engine()
    result = _reevaluate(milestone, engine)
    _commit()
    logger.info("Task deleted id=%s milestone_id=%s", task_id, milestone.id)
    return {
        "milestone": serialize_milestone(milestone, engine),
        "cascade": result.to_dict(),
    }


def transition_task(task_id, status, role=None) -> dict:
    """
    Change a task's status and cascade into the owning milestone.

    Only the provider (or the engine, role None) works tasks.  The task
    change itself is committed even when the milestone cascade is blocked;
    the blocking reason is returned.
    """
    if role is not None and role != "provider":
        raise ForbiddenError(f"Only the provider may change task status (role={role!r})")
    task = get_task(task_id)
    engine = build_engine()
    transition = engine.transition_task(task, status, _context(task, role))
    milestone = task.milestone
    cascade = _reevaluate(milestone, engine)
    _commit()
    return {
        "task": task.to_dict(),
        "transition": transition.to_dict(),
        "milestone": serialize_milestone(milestone, engine),
        "cascade": cascade.to_dict(),
    }


# ── Dependencies ─────────────────────────────────────────────────────────────


def _edge(source_id, depends_on_id, dependency_type, lag_days):
    lag = _whole_number("lag_days", lag_days if lag_days is not None else 0)
    return Edge(source_id, depends_on_id, dependency_type or "finish_to_start", lag)


def add_milestone_dependency(milestone_id, depends_on_id, dependency_type="finish_to_start", lag_days=0):
    """
    Store ``milestone → depends_on`` after validation.

    Cycles (self-loops included), duplicates and cross-booking edges are
    rejected before anything is written.
    """
    source = get_milestone(milestone_id)
    target = db.session.get(Milestone, depends_on_id)
    if target is None:
        raise NotFoundError("Milestone", depends_on_id)
    if target.booking_id != source.booking_id:
        raise ValidationError(
            "Both milestones must belong to the same booking",
            details={"source_booking": source.booking_id, "depends_on_booking": target.booking_id},
        )

    candidate = _edge(source.id, target.id, dependency_type, lag_days)
    graph = DependencyGraph.from_entities(_booking_milestones(source.booking_id))
    graph.validate_edge(candidate)

    dep = MilestoneDependency(
        source=source,
        depends_on=target,
        dependency_type=candidate.dependency_type,
        lag_days=candidate.lag_days,
    )
    db.session.add(dep)
    _commit()
    logger.info(
        "MilestoneDependency created id=%s %s → %s type=%s lag=%s",
        dep.id, source.id, target.id, dep.dependency_type, dep.lag_days,
    )
    return dep


def list_milestone_dependencies(milestone_id) -> dict:
    milestone = get_milestone(milestone_id)
    return {
        "milestone_id": milestone.id,
        "dependencies": [d.to_dict() for d in milestone.dependencies],
        "dependents": [d.to_dict() for d in milestone.incoming_edges],
    }


def remove_milestone_dependency(dependency_id) -> None:
    dep = db.session.get(MilestoneDependency, dependency_id)
    if dep is None:
        raise NotFoundError("MilestoneDependency", dependency_id)
    db.session.delete(dep)
    _commit()
    logger.info("MilestoneDependency deleted id=%s", dependency_id)


def add_task_dependency(task_id, depends_on_id, dependency_type="finish_to_start", lag_days=0):
    """Task-scope counterpart of add_milestone_dependency (scope = the booking's tasks)."""
    source = get_task(task_id)
    target = db.session.get(Task, depends_on_id)
    if target is None:
        raise NotFoundError("Task", depends_on_id)
    booking_id = source.milestone.booking_id
    if target.milestone.booking_id != booking_id:
        raise ValidationError("Both tasks must belong to the same booking")

    candidate = _edge(source.id, target.id, dependency_type, lag_days)
    graph = DependencyGraph.from_entities(_booking_tasks(booking_id))
    graph.validate_edge(candidate)

    dep = TaskDependency(
        source=source,
        depends_on=target,
        dependency_type=candidate.dependency_type,
        lag_days=candidate.lag_days,
    )
    db.session.add(dep)
    _commit()
    logger.info(
        "TaskDependency created id=%s %s → %s type=%s lag=%s",
        dep.id, source.id, target.id, dep.dependency_type, dep.lag_days,
    )
    return dep


def list_task_dependencies(task_id) -> dict:
    task = get_task(task_id)
    return {
        "task_id": task.id,
        "dependencies": [d.to_dict() for d in task.dependencies],
        "dependents": [d.to_dict() for d in task.incoming_edges],
    }


def remove_task_dependency(dependency_id) -> None:
    dep = db.session.get(TaskDependency, dependency_id)
    if dep is None:
        raise NotFoundError("TaskDependency", dependency_id)
    db.session.delete(dep)
    _commit()
    logger.info("TaskDependency deleted id=%s", dependency_id)


# ── Sequence ─────────────────────────────────────────────────────────────────


def sequence(booking_id) -> dict:
    milestones = _booking_milestones(booking_id)
    return {
        "booking_id": booking_id,
        "order": [m.id for m in sequence_manager.ordered(milestones)],
        "version": sequence_manager.sequence_version(milestones),
    }


def _check_sequence_version(milestones, version):
    if version is None:
        return
    current = sequence_manager.sequence_version(milestones)
    if version != current:
        logger.warning("Stale sequence version booking=%s", milestones[0].booking_id if milestones else None)
        raise ConcurrencyConflict(
            "Milestone order changed since it was read; reload and retry"
        )


def reorder_milestones(booking_id, ordered_ids, version=None) -> dict:
    """Apply a full or partial target order as one locked batch."""
    if not isinstance(ordered_ids, (list, tuple)):
        raise ValidationError("ordered_ids must be a list of milestone ids")
    milestones = _booking_milestones(booking_id, lock=True)
    _check_sequence_version(milestones, version)
    sequence_manager.reorder(milestones, ordered_ids)
    _commit()
    logger.info("Milestones reordered booking_id=%s count=%s", booking_id, len(ordered_ids))
    return sequence(booking_id)


def move_milestone(milestone_id, direction, version=None) -> dict:
    milestone = get_milestone(milestone_id)
    milestones = _booking_milestones(milestone.booking_id, lock=True)
    _check_sequence_version(milestones, version)
    moved = sequence_manager.move(milestones, milestone.id, direction)
    _commit()
    if moved:
        logger.info("Milestone moved id=%s direction=%s", milestone.id, direction)
    return sequence(milestone.booking_id)


# ── Approvals ────────────────────────────────────────────────────────────────


def submit_approval(
    milestone_id, status, feedback=None, role=None,
    expected_version=None, require_approval=None,
) -> dict:
    """
    SubmitApproval(milestone, status, feedback, role).

    Appends a client decision and re-evaluates the milestone in the same
    transaction: an ``approved`` record on a 100% milestone completes it,
    a ``rejected`` one leaves it in progress with the feedback stored.
    """
    engine = build_engine(require_approval)
    gate = engine.approval_gate
    feedback = gate.check_submission(role, status, feedback)

    milestone = get_milestone(milestone_id)
    _check_version(milestone, expected_version)
    if milestone.status == "cancelled":
        raise StateError("Cannot approve a cancelled milestone", current="cancelled")
    if gate.require_approval and milestone.status == "completed":
        raise StateError("Milestone is already completed", current="completed")

    now = datetime.now(timezone.utc)
    approval = MilestoneApproval(
        status=status, feedback=feedback, actor_role=role,
        created_at=now, updated_at=now,
    )
    milestone.approvals.append(approval)
    # Touching the row bumps its version so concurrent submissions collide.
    milestone.updated_at = now
    _flush()

    cascade = _reevaluate(milestone, engine)
    gate.notify_submitted(milestone, approval)
    _commit()
    return {
        "approval": approval.to_dict(),
        "milestone": serialize_milestone(milestone, engine),
        "cascade": cascade.to_dict(),
    }


def list_approvals(milestone_id) -> list[dict]:
    """Full append-only approval log, newest first."""
    milestone = get_milestone(milestone_id)
    return [a.to_dict() for a in approval_history(milestone.approvals)]


# ── Comments ─────────────────────────────────────────────────────────────────


def add_comment(milestone_id, body, role, task_id=None) -> MilestoneComment:
    milestone = get_milestone(milestone_id)
    if role not in ROLES:
        raise ValidationError(f"Invalid role '{role}'", details={"role": sorted(ROLES)})
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body must not be empty")
    if task_id is not None:
        task = db.session.get(Task, task_id)
        if task is None or task.milestone_id != milestone.id:
            raise NotFoundError("Task", task_id)

    comment = MilestoneComment(author_role=role, body=body, task_id=task_id)
    milestone.comments.append(comment)
    _commit()
    logger.info("MilestoneComment created id=%s milestone_id=%s", comment.id, milestone.id)
    return comment


def list_comments(milestone_id, task_id=None) -> list[MilestoneComment]:
    milestone = get_milestone(milestone_id)
    comments = milestone.comments
    if task_id is not None:
        comments = [c for c in comments if c.task_id == task_id]
    return list(comments)
