"""Unit tests for app/services/approval_gate.py."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.core.exceptions import ForbiddenError, ValidationError
from app.services.approval_gate import (
    GATE_CLEARED,
    GATE_PENDING,
    GATE_REJECTED,
    ApprovalGate,
    approval_history,
    latest_approval,
)

T0 = datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)


def _approval(approval_id, status, offset_minutes=0, feedback=None, naive=False):
    created = T0 + timedelta(minutes=offset_minutes)
    if naive:
        created = created.replace(tzinfo=None)
    return SimpleNamespace(id=approval_id, status=status, feedback=feedback, created_at=created)


def _milestone(approvals=(), status="in_progress"):
    return SimpleNamespace(id=1, status=status, approvals=list(approvals))


@pytest.mark.unit
class TestLatestApproval:
    def test_empty(self):
        assert latest_approval([]) is None

    def test_newest_by_created_at(self):
        old = _approval(1, "approved", 0)
        new = _approval(2, "rejected", 5)
        assert latest_approval([new, old]) is new

    def test_id_breaks_ties(self):
        a = _approval(3, "approved", 0)
        b = _approval(4, "rejected", 0)
        assert latest_approval([b, a]) is b

    def test_mixed_naive_and_aware_timestamps(self):
        aware = _approval(1, "approved", 0)
        naive = _approval(2, "rejected", 10, naive=True)
        assert latest_approval([aware, naive]) is naive

    def test_history_newest_first(self):
        records = [_approval(1, "rejected", 0), _approval(2, "approved", 3), _approval(3, "rejected", 1)]
        assert [a.id for a in approval_history(records)] == [2, 3, 1]


@pytest.mark.unit
class TestGateStatus:
    def test_no_approval_is_pending(self):
        assert ApprovalGate().status(_milestone()) == GATE_PENDING

    def test_latest_approved_clears(self):
        m = _milestone([_approval(1, "rejected", 0), _approval(2, "approved", 1)])
        assert ApprovalGate().status(m) == GATE_CLEARED
        assert ApprovalGate().is_cleared(m)

    def test_latest_rejected_blocks_even_after_earlier_approval(self):
        m = _milestone([_approval(1, "approved", 0), _approval(2, "rejected", 1, feedback="colors")])
        gate = ApprovalGate()
        assert gate.status(m) == GATE_REJECTED
        assert gate.rejection_feedback(m) == "colors"

    def test_not_required_is_always_cleared(self):
        m = _milestone([_approval(1, "rejected", 0)])
        assert ApprovalGate(require_approval=False).status(m) == GATE_CLEARED

    def test_rejection_feedback_none_when_approved(self):
        m = _milestone([_approval(1, "approved", 0, feedback="fine")])
        assert ApprovalGate().rejection_feedback(m) is None


@pytest.mark.unit
class TestPendingApprovalFlag:
    def test_full_progress_without_approval(self):
        assert ApprovalGate().pending_approval(_milestone(), 100) is True

    def test_partial_progress(self):
        assert ApprovalGate().pending_approval(_milestone(), 99) is False

    def test_completed_milestone_is_never_pending(self):
        assert ApprovalGate().pending_approval(_milestone(status="completed"), 100) is False

    def test_approved(self):
        m = _milestone([_approval(1, "approved")])
        assert ApprovalGate().pending_approval(m, 100) is False


@pytest.mark.unit
class TestSubmissionRules:
    def test_only_client_submits(self):
        for role in ("provider", None, "admin"):
            with pytest.raises(ForbiddenError):
                ApprovalGate.check_submission(role, "approved")

    def test_status_must_be_decision(self):
        with pytest.raises(ValidationError):
            ApprovalGate.check_submission("client", "pending")

    def test_feedback_is_trimmed(self):
        assert ApprovalGate.check_submission("client", "rejected", "  wrong font  ") == "wrong font"
        assert ApprovalGate.check_submission("client", "approved", "   ") is None
        assert ApprovalGate.check_submission("client", "approved") is None

    def test_feedback_too_long(self):
        with pytest.raises(ValidationError):
            ApprovalGate.check_submission("client", "rejected", "x" * 5001)

    def test_completion_roles(self):
        assert ApprovalGate.may_request_completion("provider")
        assert ApprovalGate.may_request_completion(None)
        assert not ApprovalGate.may_request_completion("client")

    def test_on_submitted_hook(self):
        seen = []
        gate = ApprovalGate(on_submitted=lambda m, a: seen.append((m.id, a.status)))
        gate.notify_submitted(_milestone(), _approval(1, "approved"))
        assert seen == [(1, "approved")]
