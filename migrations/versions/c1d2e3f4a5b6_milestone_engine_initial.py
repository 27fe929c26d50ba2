"""milestone_engine_initial

Creates the milestone engine tables:
  - milestones               - booking phases, dense order_index per booking
  - tasks                    - units of work owned by a milestone
  - milestone_dependencies   - milestone → milestone edges (type + lag_days)
  - task_dependencies        - task → task edges (type + lag_days)
  - milestone_approvals      - append-only client sign-off log
  - milestone_comments       - discussion entries, optionally pinned to a task

Tables created conditionally (IF NOT EXISTS semantics) so the migration is
idempotent against databases that already received them via db.create_all()
in development.

Revision ID: c1d2e3f4a5b6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c1d2e3f4a5b6'
down_revision = None
branch_labels = None
depends_on = None

_STATUS_CHECK = "status IN ('pending','in_progress','completed','cancelled','on_hold')"
_DEP_TYPE_CHECK = (
    "dependency_type IN ('finish_to_start','start_to_start',"
    "'finish_to_finish','start_to_finish')"
)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Milestones ────────────────────────────────────────────────────────
    if "milestones" not in existing:
        op.create_table(
            "milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("booking_id", sa.String(length=64), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="pending",
                      comment="pending | in_progress | completed | cancelled | on_hold"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="medium"),
            sa.Column("risk_level", sa.String(length=20), nullable=False, server_default="low"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("estimated_hours", sa.Float(), nullable=True),
            sa.Column("actual_hours", sa.Float(), nullable=True),
            sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
            sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.CheckConstraint(_STATUS_CHECK, name="ck_milestone_status"),
            sa.CheckConstraint("priority IN ('low','medium','high','urgent')",
                               name="ck_milestone_priority"),
            sa.CheckConstraint("risk_level IN ('low','medium','high','critical')",
                               name="ck_milestone_risk_level"),
            sa.CheckConstraint("weight > 0", name="ck_milestone_weight_positive"),
            sa.CheckConstraint("order_index >= 0", name="ck_milestone_order_index"),
            sa.CheckConstraint("progress_percentage BETWEEN 0 AND 100",
                               name="ck_milestone_progress_range"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_milestones_booking_id", "milestones", ["booking_id"])
        op.create_index("ix_milestones_booking_order", "milestones", ["booking_id", "order_index"])

    # ── Tasks ─────────────────────────────────────────────────────────────
    if "tasks" not in existing:
        op.create_table(
            "tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="medium"),
            sa.Column("due_date", sa.Date(), nullable=True),
            sa.Column("estimated_hours", sa.Float(), nullable=True),
            sa.Column("actual_hours", sa.Float(), nullable=True),
            sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
            sa.Column("order_index", sa.Integer(), nullable=False, server_default="0",
                      comment="Display order within the milestone"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(_STATUS_CHECK, name="ck_task_status"),
            sa.CheckConstraint("priority IN ('low','medium','high','urgent')",
                               name="ck_task_priority"),
            sa.CheckConstraint("weight > 0", name="ck_task_weight_positive"),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_tasks_milestone_id", "tasks", ["milestone_id"])

    # ── Dependency edges ──────────────────────────────────────────────────
    for table, target, prefix in (
        ("milestone_dependencies", "milestones", "milestone_dep"),
        ("task_dependencies", "tasks", "task_dep"),
    ):
        if table in existing:
            continue
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_id", sa.Integer(), nullable=False),
            sa.Column("depends_on_id", sa.Integer(), nullable=False),
            sa.Column("dependency_type", sa.String(length=30), nullable=False,
                      server_default="finish_to_start"),
            sa.Column("lag_days", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("source_id", "depends_on_id", name=f"uq_{prefix}"),
            sa.CheckConstraint("source_id != depends_on_id", name=f"ck_{prefix}_no_self_loop"),
            sa.CheckConstraint("lag_days >= 0", name=f"ck_{prefix}_lag"),
            sa.CheckConstraint(_DEP_TYPE_CHECK, name=f"ck_{prefix}_type"),
            sa.ForeignKeyConstraint(["source_id"], [f"{target}.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["depends_on_id"], [f"{target}.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(f"ix_{table}_source_id", table, ["source_id"])
        op.create_index(f"ix_{table}_depends_on_id", table, ["depends_on_id"])

    # ── Approvals ─────────────────────────────────────────────────────────
    if "milestone_approvals" not in existing:
        op.create_table(
            "milestone_approvals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="pending", comment="pending | approved | rejected"),
            sa.Column("feedback", sa.Text(), nullable=True),
            sa.Column("actor_role", sa.String(length=20), nullable=False, server_default="client"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("status IN ('pending','approved','rejected')",
                               name="ck_milestone_approval_status"),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_milestone_approvals_milestone_id", "milestone_approvals", ["milestone_id"])

    # ── Comments ──────────────────────────────────────────────────────────
    if "milestone_comments" not in existing:
        op.create_table(
            "milestone_comments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=True),
            sa.Column("author_role", sa.String(length=20), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("author_role IN ('client','provider')",
                               name="ck_milestone_comment_role"),
            sa.ForeignKeyConstraint(["milestone_id"], ["milestones.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["task_id"], ["tasks.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_milestone_comments_milestone_id", "milestone_comments", ["milestone_id"])
        op.create_index("ix_milestone_comments_task_id", "milestone_comments", ["task_id"])


def downgrade():
    for table in (
        "milestone_comments",
        "milestone_approvals",
        "task_dependencies",
        "milestone_dependencies",
        "tasks",
        "milestones",
    ):
        op.drop_table(table)
