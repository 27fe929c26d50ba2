"""
Service-layer tests for app/services/milestone_service.py.

Runs against the in-memory SQLite database from conftest; every test
starts from empty tables.
"""

import pytest
from flask import current_app

from app.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from app.models import db
from app.models.milestone import Milestone, MilestoneComment, MilestoneDependency, Task
from app.services import milestone_service as svc
from app.services.demo_seed import seed_demo_booking


def _ms(booking_id, title, **fields):
    return svc.create_milestone(booking_id, {"title": title, **fields})


def _task(milestone, title="Task", **fields):
    return svc.create_task(milestone.id, {"title": title, **fields})


def _complete(task):
    return svc.transition_task(task.id, "completed", role="provider")


# ═════════════════════════════════════════════════════════════════════════════
# Milestone CRUD & sequence
# ═════════════════════════════════════════════════════════════════════════════


class TestMilestoneCrud:
    def test_create_appends_to_sequence(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        other = _ms("BK-OTHER", "X")
        assert (a.order_index, b.order_index) == (0, 1)
        assert other.order_index == 0
        assert a.status == "pending"
        assert a.progress_percentage == 0
        assert a.version == 1

    def test_create_requires_title(self, booking_id):
        with pytest.raises(ValidationError):
            svc.create_milestone(booking_id, {"title": "   "})
        with pytest.raises(ValidationError):
            svc.create_milestone(booking_id, {"description": "no title"})

    def test_create_rejects_non_positive_weight(self, booking_id):
        with pytest.raises(ValidationError, match="weight"):
            _ms(booking_id, "A", weight=0)

    def test_update_fields(self, booking_id):
        m = _ms(booking_id, "A")
        svc.update_milestone(m.id, {"title": "Renamed", "due_date": "2026-06-30", "priority": "high"})
        m = svc.get_milestone(m.id)
        assert m.title == "Renamed"
        assert m.due_date.isoformat() == "2026-06-30"
        assert m.priority == "high"
        assert m.version == 2

    def test_unparseable_date_rejected_without_change(self, booking_id):
        m = _ms(booking_id, "A", due_date="2026-12-01")
        for bad in ("not-a-date", "01.12.2026"):
            with pytest.raises(ValidationError, match="due_date"):
                svc.update_milestone(m.id, {"due_date": bad})
        m = svc.get_milestone(m.id)
        assert m.due_date.isoformat() == "2026-12-01"
        assert m.version == 1

    def test_clearing_a_date_with_null(self, booking_id):
        m = _ms(booking_id, "A", start_date="2026-11-01")
        svc.update_milestone(m.id, {"start_date": None})
        assert svc.get_milestone(m.id).start_date is None

    def test_non_string_choice_rejected(self, booking_id):
        with pytest.raises(ValidationError, match="priority"):
            _ms(booking_id, "A", priority=["high"])
        with pytest.raises(ValidationError, match="risk_level"):
            _ms(booking_id, "A", risk_level={"level": "low"})

    def test_update_ignores_status_and_progress(self, booking_id):
        m = _ms(booking_id, "A")
        svc.update_milestone(m.id, {"status": "completed", "progress_percentage": 100})
        m = svc.get_milestone(m.id)
        assert m.status == "pending"
        assert m.progress_percentage == 0

    def test_stale_version_rejected(self, booking_id):
        m = _ms(booking_id, "A")
        with pytest.raises(ConcurrencyConflict):
            svc.update_milestone(m.id, {"title": "B"}, expected_version=m.version + 1)
        db.session.rollback()
        assert svc.get_milestone(m.id).title == "A"

    def test_get_unknown_milestone(self):
        with pytest.raises(NotFoundError):
            svc.get_milestone(9999)

    def test_delete_cascades_and_normalizes(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        c = _ms(booking_id, "C")
        _task(b)
        svc.add_milestone_dependency(c.id, b.id)
        svc.add_milestone_dependency(b.id, a.id)
        b_id = b.id

        svc.delete_milestone(b_id)

        assert db.session.get(Milestone, b_id) is None
        assert Task.query.filter_by(milestone_id=b_id).count() == 0
        assert MilestoneDependency.query.count() == 0
        remaining = Milestone.query.filter_by(booking_id=booking_id).order_by(Milestone.order_index).all()
        assert [(m.title, m.order_index) for m in remaining] == [("A", 0), ("C", 1)]


class TestSequence:
    def test_reorder_full_list(self, booking_id):
        a, b, c, d = (_ms(booking_id, t) for t in "ABCD")
        result = svc.reorder_milestones(booking_id, [c.id, a.id, b.id, d.id])
        assert result["order"] == [c.id, a.id, b.id, d.id]
        indices = {m.title: m.order_index for m in Milestone.query.all()}
        assert indices == {"A": 1, "B": 2, "C": 0, "D": 3}

    def test_reorder_unknown_id_changes_nothing(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        with pytest.raises(NotFoundError):
            svc.reorder_milestones(booking_id, [b.id, 424242])
        db.session.rollback()
        assert svc.sequence(booking_id)["order"] == [a.id, b.id]

    def test_reorder_rejects_milestone_of_other_booking(self, booking_id):
        a = _ms(booking_id, "A")
        foreign = _ms("BK-OTHER", "X")
        with pytest.raises(NotFoundError):
            svc.reorder_milestones(booking_id, [foreign.id, a.id])

    def test_stale_sequence_version(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        token = svc.sequence(booking_id)["version"]
        svc.move_milestone(b.id, "up", version=token)
        with pytest.raises(ConcurrencyConflict):
            svc.reorder_milestones(booking_id, [a.id, b.id], version=token)

    def test_move(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        assert svc.move_milestone(a.id, "down")["order"] == [b.id, a.id]
        assert svc.move_milestone(a.id, "down")["order"] == [b.id, a.id]


# ═════════════════════════════════════════════════════════════════════════════
# Progress & tasks
# ═════════════════════════════════════════════════════════════════════════════


class TestProgress:
    def test_weighted_progress_75(self, booking_id):
        m = _ms(booking_id, "Build")
        t1 = _task(m, "one", weight=1)
        _task(m, "two", weight=1)
        t3 = _task(m, "three", weight=2)

        _complete(t1)
        _complete(t3)

        summary = svc.milestone_progress(m.id)
        assert summary["progress_percentage"] == 75
        assert summary["tasks"]["completed"] == 2
        assert svc.get_milestone(m.id).progress_percentage == 75
        assert svc.get_milestone(m.id).status == "in_progress"

    def test_first_task_started_starts_milestone(self, booking_id):
        m = _ms(booking_id, "A")
        t = _task(m)
        result = svc.transition_task(t.id, "in_progress", role="provider")
        assert result["cascade"]["new_status"] == "in_progress"
        m = svc.get_milestone(m.id)
        assert m.status == "in_progress"
        assert m.started_at is not None

    def test_delete_task_recomputes(self, booking_id):
        m = _ms(booking_id, "A")
        done = _task(m, "done")
        open_task = _task(m, "open")
        _complete(done)
        assert svc.get_milestone(m.id).progress_percentage == 50

        result = svc.delete_task(open_task.id)
        assert result["milestone"]["progress_percentage"] == 100
        assert result["cascade"]["pending_approval"] is True
        assert svc.get_milestone(m.id).status == "in_progress"

    def test_delete_task_closes_order_gap(self, booking_id):
        m = _ms(booking_id, "A")
        _task(m, "first")
        middle = _task(m, "middle")
        _task(m, "last")
        svc.delete_task(middle.id)
        assert [(t.title, t.order_index) for t in svc.list_tasks(m.id)] == [("first", 0), ("last", 1)]

    def test_create_task_at_position_keeps_order_dense(self, booking_id):
        m = _ms(booking_id, "A")
        _task(m, "a")
        _task(m, "far", order_index=40)
        _task(m, "head", order_index=0)
        assert [(t.title, t.order_index) for t in svc.list_tasks(m.id)] == [
            ("head", 0), ("a", 1), ("far", 2),
        ]

    def test_update_task_order_moves_within_milestone(self, booking_id):
        m = _ms(booking_id, "A")
        a = _task(m, "a")
        _task(m, "b")
        _task(m, "c")
        svc.update_task(a.id, {"order_index": 1})
        assert [(t.title, t.order_index) for t in svc.list_tasks(m.id)] == [
            ("b", 0), ("a", 1), ("c", 2),
        ]
        svc.update_task(a.id, {"order_index": 99})
        assert [t.order_index for t in svc.list_tasks(m.id)] == [0, 1, 2]
        assert svc.get_task(a.id).order_index == 2

    def test_fractional_task_order_rejected(self, booking_id):
        m = _ms(booking_id, "A")
        with pytest.raises(ValidationError, match="order_index"):
            _task(m, "a", order_index=1.5)

    def test_weight_update_recomputes(self, booking_id):
        m = _ms(booking_id, "A")
        done = _task(m, "done")
        _task(m, "open")
        _complete(done)
        svc.update_task(done.id, {"weight": 3})
        assert svc.get_milestone(m.id).progress_percentage == 75

    def test_booking_summary(self, booking_id):
        a = _ms(booking_id, "A", weight=3, estimated_hours=10)
        b = _ms(booking_id, "B", estimated_hours=5)
        _complete(_task(a))
        _complete(_task(b))
        _task(b)

        summary = svc.progress_summary(booking_id)
        assert summary["progress_percentage"] == 88
        assert summary["tasks_total"] == 3
        assert summary["tasks_completed"] == 2
        assert summary["estimated_hours"] == 15
        assert [row["title"] for row in summary["milestones"]] == ["A", "B"]
        assert summary["milestones"][0]["pending_approval"] is True

    def test_only_provider_changes_tasks(self, booking_id):
        t = _task(_ms(booking_id, "A"))
        with pytest.raises(ForbiddenError):
            svc.transition_task(t.id, "completed", role="client")

    def test_progress_drift_reverts_when_enabled(self, booking_id):
        current_app.config.update(REQUIRE_APPROVAL=False, ALLOW_PROGRESS_DRIFT=True)
        m = _ms(booking_id, "A")
        t = _task(m)
        _complete(t)
        assert svc.get_milestone(m.id).status == "completed"

        svc.transition_task(t.id, "pending", role="provider")
        m = svc.get_milestone(m.id)
        assert m.status == "pending"
        assert m.completed_at is None

    def test_completed_milestone_sticky_by_default(self, booking_id):
        current_app.config["REQUIRE_APPROVAL"] = False
        m = _ms(booking_id, "A")
        t = _task(m)
        _complete(t)
        svc.transition_task(t.id, "pending", role="provider")
        m = svc.get_milestone(m.id)
        assert m.status == "completed"
        assert m.progress_percentage == 0


# ═════════════════════════════════════════════════════════════════════════════
# Dependencies & transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestDependencies:
    def test_finish_to_start_blocks_explicit_start(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        svc.add_milestone_dependency(a.id, b.id, "finish_to_start", 0)
        svc.transition_milestone(b.id, "in_progress", role="provider")

        with pytest.raises(StateError, match="predecessor not finished") as exc:
            svc.transition_milestone(a.id, "in_progress", role="provider")
        assert exc.value.current == "pending"
        db.session.rollback()
        assert svc.get_milestone(a.id).status == "pending"

        check = svc.can_transition_milestone(a.id, "in_progress", role="provider")
        assert check["allowed"] is False
        assert "'B'" in check["reason"]

    def test_cycle_rejected_and_edges_unchanged(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        svc.add_milestone_dependency(a.id, b.id)

        with pytest.raises(ValidationError, match="cycle"):
            svc.add_milestone_dependency(b.id, a.id)
        db.session.rollback()

        edges = [(d.source_id, d.depends_on_id) for d in MilestoneDependency.query.all()]
        assert edges == [(a.id, b.id)]

    def test_self_reference_and_duplicate(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        with pytest.raises(ValidationError):
            svc.add_milestone_dependency(a.id, a.id)
        svc.add_milestone_dependency(a.id, b.id)
        with pytest.raises(ConflictError):
            svc.add_milestone_dependency(a.id, b.id, "start_to_start")

    def test_cross_booking_rejected(self, booking_id):
        a = _ms(booking_id, "A")
        x = _ms("BK-OTHER", "X")
        with pytest.raises(ValidationError, match="same booking"):
            svc.add_milestone_dependency(a.id, x.id)

    def test_invalid_lag(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        with pytest.raises(ValidationError, match="lag_days"):
            svc.add_milestone_dependency(a.id, b.id, lag_days=-2)
        with pytest.raises(ValidationError, match="lag_days"):
            svc.add_milestone_dependency(a.id, b.id, lag_days="soon")
        with pytest.raises(ValidationError, match="lag_days"):
            svc.add_milestone_dependency(a.id, b.id, lag_days=1.9)
        with pytest.raises(ValidationError, match="dependency_type"):
            svc.add_milestone_dependency(a.id, b.id, dependency_type=["finish_to_start"])
        assert svc.list_milestone_dependencies(a.id)["dependencies"] == []

    def test_dependents_listed_from_edges(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        svc.add_milestone_dependency(a.id, b.id, "start_to_start", 2)
        listing = svc.list_milestone_dependencies(b.id)
        assert listing["dependencies"] == []
        assert listing["dependents"][0]["source_id"] == a.id
        assert listing["dependents"][0]["lag_days"] == 2
        assert svc.get_milestone(b.id).dependent_ids == [a.id]

    def test_blocked_auto_start_keeps_task_change(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        svc.add_milestone_dependency(a.id, b.id)
        t = _task(a)

        result = _complete(t)
        assert result["task"]["status"] == "completed"
        assert result["milestone"]["status"] == "pending"
        assert "predecessor not finished" in result["cascade"]["blocked_reason"]
        assert svc.get_task(t.id).status == "completed"

    def test_removing_edge_unblocks(self, booking_id):
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        dep = svc.add_milestone_dependency(a.id, b.id)
        svc.remove_milestone_dependency(dep.id)
        result = svc.transition_milestone(a.id, "in_progress", role="provider")
        assert result["transition"]["new_status"] == "in_progress"

    def test_client_cannot_complete(self, booking_id):
        m = _ms(booking_id, "A")
        svc.transition_milestone(m.id, "in_progress", role="provider")
        with pytest.raises(StateError, match="provider"):
            svc.transition_milestone(m.id, "completed", role="client")

    def test_task_dependency_enforced_when_enabled(self, booking_id):
        current_app.config["ENFORCE_TASK_DEPENDENCIES"] = True
        a = _ms(booking_id, "A")
        b = _ms(booking_id, "B")
        first = _task(a, "first")
        second = _task(b, "second")
        svc.add_task_dependency(second.id, first.id)

        with pytest.raises(StateError, match="predecessor not finished"):
            svc.transition_task(second.id, "in_progress", role="provider")
        db.session.rollback()

        _complete(first)
        result = svc.transition_task(second.id, "in_progress", role="provider")
        assert result["task"]["status"] == "in_progress"

    def test_task_dependency_cycle(self, booking_id):
        m = _ms(booking_id, "A")
        t1 = _task(m, "one")
        t2 = _task(m, "two")
        svc.add_task_dependency(t1.id, t2.id)
        with pytest.raises(ValidationError, match="cycle"):
            svc.add_task_dependency(t2.id, t1.id)
        db.session.rollback()
        assert svc.list_task_dependencies(t2.id)["dependents"][0]["source_id"] == t1.id

    def test_critical_path(self, booking_id):
        a = _ms(booking_id, "A", estimated_hours=10)
        b = _ms(booking_id, "B", estimated_hours=5)
        c = _ms(booking_id, "C")
        _task(c, "small", estimated_hours=1)
        svc.add_milestone_dependency(b.id, a.id)

        result = svc.critical_path(booking_id)
        assert result["critical_path"] == [a.id, b.id]
        assert result["longest_chain_hours"] == 15

        listed = {row["title"]: row["critical_path"] for row in svc.list_milestones(booking_id)}
        assert listed == {"A": True, "B": True, "C": False}


# ═════════════════════════════════════════════════════════════════════════════
# Approvals
# ═════════════════════════════════════════════════════════════════════════════


class TestApprovals:
    def _done_milestone(self, booking_id):
        m = _ms(booking_id, "Design")
        result = _complete(_task(m))
        assert result["cascade"]["pending_approval"] is True
        assert result["cascade"]["blocked_reason"] == "Cannot complete: pending client approval"
        return m

    def test_rejection_keeps_in_progress_with_feedback(self, booking_id):
        m = self._done_milestone(booking_id)

        result = svc.submit_approval(m.id, "rejected", feedback="Logo too small", role="client")

        assert result["milestone"]["status"] == "in_progress"
        assert result["milestone"]["rejection_feedback"] == "Logo too small"
        assert result["milestone"]["approval_state"] == "rejected"
        assert "Logo too small" in result["cascade"]["blocked_reason"]
        assert svc.list_approvals(m.id)[0]["feedback"] == "Logo too small"

    def test_approval_completes(self, booking_id):
        m = self._done_milestone(booking_id)
        svc.submit_approval(m.id, "rejected", feedback="again", role="client")
        result = svc.submit_approval(m.id, "approved", role="client")

        assert result["milestone"]["status"] == "completed"
        assert result["cascade"]["new_status"] == "completed"
        history = svc.list_approvals(m.id)
        assert [a["status"] for a in history] == ["approved", "rejected"]

    def test_approval_before_tasks_done_does_not_complete(self, booking_id):
        m = _ms(booking_id, "A")
        t1 = _task(m)
        _task(m)
        _complete(t1)
        result = svc.submit_approval(m.id, "approved", role="client")
        assert result["milestone"]["status"] == "in_progress"
        assert result["milestone"]["approval_state"] == "cleared"

    def test_submission_bumps_version(self, booking_id):
        m = self._done_milestone(booking_id)
        before = svc.get_milestone(m.id).version
        svc.submit_approval(m.id, "rejected", feedback="x", role="client")
        assert svc.get_milestone(m.id).version > before

    def test_stale_version_rejected(self, booking_id):
        m = self._done_milestone(booking_id)
        stale = svc.get_milestone(m.id).version - 1
        with pytest.raises(ConcurrencyConflict):
            svc.submit_approval(m.id, "approved", role="client", expected_version=stale)

    def test_only_client_submits(self, booking_id):
        m = self._done_milestone(booking_id)
        with pytest.raises(ForbiddenError):
            svc.submit_approval(m.id, "approved", role="provider")

    def test_invalid_status(self, booking_id):
        m = self._done_milestone(booking_id)
        with pytest.raises(ValidationError):
            svc.submit_approval(m.id, "maybe", role="client")

    def test_cancelled_milestone_refuses_approval(self, booking_id):
        m = _ms(booking_id, "A")
        svc.transition_milestone(m.id, "cancelled", role="provider")
        with pytest.raises(StateError):
            svc.submit_approval(m.id, "approved", role="client")

    def test_completed_without_approval_requirement(self, booking_id):
        current_app.config["REQUIRE_APPROVAL"] = False
        m = _ms(booking_id, "A")
        result = _complete(_task(m))
        assert result["milestone"]["status"] == "completed"
        assert result["milestone"]["pending_approval"] is False


# ═════════════════════════════════════════════════════════════════════════════
# Comments & seed
# ═════════════════════════════════════════════════════════════════════════════


class TestComments:
    def test_add_and_filter(self, booking_id):
        m = _ms(booking_id, "A")
        t = _task(m)
        svc.add_comment(m.id, "General note", "client")
        svc.add_comment(m.id, "About the task", "provider", task_id=t.id)

        assert [c.body for c in svc.list_comments(m.id)] == ["General note", "About the task"]
        assert [c.body for c in svc.list_comments(m.id, task_id=t.id)] == ["About the task"]

    def test_validation(self, booking_id):
        m = _ms(booking_id, "A")
        other = _task(_ms(booking_id, "B"))
        with pytest.raises(ValidationError):
            svc.add_comment(m.id, "hi", "admin")
        with pytest.raises(ValidationError):
            svc.add_comment(m.id, "   ", "client")
        with pytest.raises(NotFoundError):
            svc.add_comment(m.id, "hi", "client", task_id=other.id)

    def test_comment_survives_task_delete(self, booking_id):
        m = _ms(booking_id, "A")
        t = _task(m)
        comment = svc.add_comment(m.id, "pinned", "client", task_id=t.id)
        comment_id = comment.id
        svc.delete_task(t.id)
        db.session.expire_all()
        stored = db.session.get(MilestoneComment, comment_id)
        assert stored is not None
        assert stored.task_id is None
        assert stored.milestone_id == m.id


class TestDemoSeed:
    def test_seed_is_idempotent(self):
        first = seed_demo_booking("demo-test")
        second = seed_demo_booking("demo-test")
        assert len(first) == 3
        assert [m.id for m in second] == [m.id for m in first]
        assert MilestoneDependency.query.count() == 2
