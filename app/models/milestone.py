"""
Milestone Progress Engine
Milestone / Task domain models.

Models:
    - Milestone:            a phase of work inside one booking, ordered by order_index
    - Task:                 a unit of work owned by a milestone; drives its progress
    - MilestoneDependency:  source milestone → milestone it depends on
    - TaskDependency:       source task → task it depends on (same booking)
    - MilestoneApproval:    append-only client sign-off history for a milestone
    - MilestoneComment:     discussion entry on a milestone (optionally about one task)

Architecture:
    Booking (external) ──1:N──▶ Milestone ──1:N──▶ Task
    Milestone ──N:M──▶ Milestone  (via MilestoneDependency)
    Task ──N:M──▶ Task            (via TaskDependency)
    Milestone ──1:N──▶ MilestoneApproval
    Milestone ──1:N──▶ MilestoneComment

Lifecycle states (Milestone and Task share the same status set):
    pending → in_progress → completed,  any → cancelled | on_hold

Derived fields:
    progress_percentage is written only by the progress calculator.
    critical_path and "pending approval" are computed on read, never stored.
    Dependents are read from the edge table, never stored on the node.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATUSES = {"pending", "in_progress", "completed", "cancelled", "on_hold"}

PRIORITIES = {"low", "medium", "high", "urgent"}

RISK_LEVELS = {"low", "medium", "high", "critical"}

DEPENDENCY_TYPES = {
    "finish_to_start", "start_to_start",
    "finish_to_finish", "start_to_finish",
}

APPROVAL_STATUSES = {"pending", "approved", "rejected"}

ROLES = {"client", "provider"}


# ── Lifecycle Transition Maps ────────────────────────────────────────────────

MILESTONE_TRANSITIONS = {
    "pending":     ["in_progress", "cancelled", "on_hold"],
    "in_progress": ["completed", "cancelled", "on_hold"],
    "completed":   ["cancelled", "on_hold"],
    "on_hold":     ["pending", "in_progress", "cancelled"],
    "cancelled":   ["pending"],
}

TASK_TRANSITIONS = {
    "pending":     ["in_progress", "completed", "cancelled", "on_hold"],
    "in_progress": ["completed", "pending", "cancelled", "on_hold"],
    "completed":   ["in_progress", "pending", "cancelled", "on_hold"],
    "on_hold":     ["pending", "in_progress", "cancelled"],
    "cancelled":   ["pending"],
}


def validate_milestone_transition(old_status, new_status):
    """Return True if the Milestone status edge exists in the lifecycle map."""
    return new_status in MILESTONE_TRANSITIONS.get(old_status, [])


def validate_task_transition(old_status, new_status):
    """Return True if the Task status edge exists in the lifecycle map."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Milestone
# ═════════════════════════════════════════════════════════════════════════════


class Milestone(db.Model):
    """
    A phase of work inside a booking.

    order_index is a dense 0..N-1 permutation per booking.  There is no
    database unique constraint on (booking_id, order_index): a reorder
    writes the whole permutation in one transaction and a unique index
    would reject the intermediate swaps.  The sequence manager owns the
    invariant instead.

    ``version`` is SQLAlchemy's optimistic-lock counter; every UPDATE of
    the row checks and bumps it.
    """

    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.String(64), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | cancelled | on_hold",
    )
    priority = db.Column(db.String(20), nullable=False, default="medium")
    risk_level = db.Column(db.String(20), nullable=False, default="low")

    # Schedule
    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    estimated_hours = db.Column(db.Float, default=0.0)
    actual_hours = db.Column(db.Float, default=0.0)

    # Derived by the progress calculator
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)

    weight = db.Column(db.Float, nullable=False, default=1.0)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    # Lifecycle timestamps (dependency lag is measured from these)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    version = db.Column(db.Integer, nullable=False)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','in_progress','completed','cancelled','on_hold')",
            name="ck_milestone_status",
        ),
        db.CheckConstraint(
            "priority IN ('low','medium','high','urgent')",
            name="ck_milestone_priority",
        ),
        db.CheckConstraint(
            "risk_level IN ('low','medium','high','critical')",
            name="ck_milestone_risk_level",
        ),
        db.CheckConstraint("weight > 0", name="ck_milestone_weight_positive"),
        db.CheckConstraint("order_index >= 0", name="ck_milestone_order_index"),
        db.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100",
            name="ck_milestone_progress_range",
        ),
        db.Index("ix_milestones_booking_order", "booking_id", "order_index"),
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ────────────────────────────────────────────────────
    tasks = db.relationship(
        "Task", backref="milestone",
        cascade="all, delete-orphan", order_by="Task.order_index",
    )
    dependencies = db.relationship(
        "MilestoneDependency",
        foreign_keys="MilestoneDependency.source_id",
        backref="source",
        cascade="all, delete-orphan",
    )
    # Same rows as ``dependencies`` seen from the other end; owned only so
    # deleting a milestone also deletes edges pointing at it.
    incoming_edges = db.relationship(
        "MilestoneDependency",
        foreign_keys="MilestoneDependency.depends_on_id",
        backref="depends_on",
        cascade="all, delete-orphan",
    )
    approvals = db.relationship(
        "MilestoneApproval", backref="milestone",
        cascade="all, delete-orphan",
        order_by="MilestoneApproval.created_at",
    )
    comments = db.relationship(
        "MilestoneComment", backref="milestone",
        cascade="all, delete-orphan",
        order_by="MilestoneComment.created_at",
    )

    @property
    def dependent_ids(self):
        """Ids of milestones that depend on this one (derived from edges)."""
        return sorted(e.source_id for e in self.incoming_edges)

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "booking_id": self.booking_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "risk_level": self.risk_level,
            "start_date": _iso(self.start_date),
            "due_date": _iso(self.due_date),
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "progress_percentage": self.progress_percentage,
            "weight": self.weight,
            "order_index": self.order_index,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
            "task_count": len(self.tasks),
            "dependency_ids": sorted(d.depends_on_id for d in self.dependencies),
            "dependent_ids": self.dependent_ids,
        }
        if include_children:
            result["tasks"] = [t.to_dict() for t in self.tasks]
            result["dependencies"] = [d.to_dict() for d in self.dependencies]
        return result

    def __repr__(self):
        return f"<Milestone {self.id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """
    Unit of work owned by a milestone.
    Completing or re-opening a task recomputes the owning milestone's progress.
    """

    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | in_progress | completed | cancelled | on_hold",
    )
    priority = db.Column(db.String(20), nullable=False, default="medium")
    due_date = db.Column(db.Date, nullable=True)
    estimated_hours = db.Column(db.Float, default=0.0)
    actual_hours = db.Column(db.Float, default=0.0)
    weight = db.Column(db.Float, nullable=False, default=1.0)
    order_index = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Display order within the milestone",
    )

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','in_progress','completed','cancelled','on_hold')",
            name="ck_task_status",
        ),
        db.CheckConstraint(
            "priority IN ('low','medium','high','urgent')",
            name="ck_task_priority",
        ),
        db.CheckConstraint("weight > 0", name="ck_task_weight_positive"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    dependencies = db.relationship(
        "TaskDependency",
        foreign_keys="TaskDependency.source_id",
        backref="source",
        cascade="all, delete-orphan",
    )
    incoming_edges = db.relationship(
        "TaskDependency",
        foreign_keys="TaskDependency.depends_on_id",
        backref="depends_on",
        cascade="all, delete-orphan",
    )

    @property
    def dependent_ids(self):
        return sorted(e.source_id for e in self.incoming_edges)

    def to_dict(self):
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "due_date": _iso(self.due_date),
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "weight": self.weight,
            "order_index": self.order_index,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "dependency_ids": sorted(d.depends_on_id for d in self.dependencies),
            "dependent_ids": self.dependent_ids,
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Dependencies
# ═════════════════════════════════════════════════════════════════════════════


class MilestoneDependency(db.Model):
    """
    Edge: ``source`` milestone depends on ``depends_on`` milestone.
    dependency_type decides which events of the two ends are related;
    lag_days is the minimum gap between them.
    """

    __tablename__ = "milestone_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    source_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    depends_on_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    dependency_type = db.Column(
        db.String(30), nullable=False, default="finish_to_start",
        comment="finish_to_start | start_to_start | finish_to_finish | start_to_finish",
    )
    lag_days = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("source_id", "depends_on_id", name="uq_milestone_dep"),
        db.CheckConstraint("source_id != depends_on_id", name="ck_milestone_dep_no_self_loop"),
        db.CheckConstraint("lag_days >= 0", name="ck_milestone_dep_lag"),
        db.CheckConstraint(
            "dependency_type IN ('finish_to_start','start_to_start',"
            "'finish_to_finish','start_to_finish')",
            name="ck_milestone_dep_type",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "source_id": self.source_id,
            "depends_on_id": self.depends_on_id,
            "dependency_type": self.dependency_type,
            "lag_days": self.lag_days,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MilestoneDependency {self.source_id} → {self.depends_on_id} [{self.dependency_type}]>"


class TaskDependency(db.Model):
    """Edge between two tasks of the same booking; same shape as MilestoneDependency."""

    __tablename__ = "task_dependencies"

    id = db.Column(db.Integer, primary_key=True)
    source_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    depends_on_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    dependency_type = db.Column(db.String(30), nullable=False, default="finish_to_start")
    lag_days = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("source_id", "depends_on_id", name="uq_task_dep"),
        db.CheckConstraint("source_id != depends_on_id", name="ck_task_dep_no_self_loop"),
        db.CheckConstraint("lag_days >= 0", name="ck_task_dep_lag"),
        db.CheckConstraint(
            "dependency_type IN ('finish_to_start','start_to_start',"
            "'finish_to_finish','start_to_finish')",
            name="ck_task_dep_type",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "source_id": self.source_id,
            "depends_on_id": self.depends_on_id,
            "dependency_type": self.dependency_type,
            "lag_days": self.lag_days,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<TaskDependency {self.source_id} → {self.depends_on_id} [{self.dependency_type}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. MilestoneApproval
# ═════════════════════════════════════════════════════════════════════════════


class MilestoneApproval(db.Model):
    """
    Client sign-off record for a milestone.

    Business rules:
    - Records are append-only; a new decision is a new row.
    - The most recent record (by created_at, then id) is authoritative.
    - Only the client role submits approvals.
    """

    __tablename__ = "milestone_approvals"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | approved | rejected",
    )
    feedback = db.Column(db.Text, nullable=True)
    actor_role = db.Column(db.String(20), nullable=False, default="client")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','approved','rejected')",
            name="ck_milestone_approval_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "status": self.status,
            "feedback": self.feedback,
            "actor_role": self.actor_role,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<MilestoneApproval #{self.id} milestone={self.milestone_id} {self.status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. MilestoneComment
# ═════════════════════════════════════════════════════════════════════════════


class MilestoneComment(db.Model):
    """Discussion entry on a milestone, optionally pinned to one of its tasks."""

    __tablename__ = "milestone_comments"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    author_role = db.Column(db.String(20), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "author_role IN ('client','provider')",
            name="ck_milestone_comment_role",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "task_id": self.task_id,
            "author_role": self.author_role,
            "body": self.body,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<MilestoneComment #{self.id} milestone={self.milestone_id}>"
