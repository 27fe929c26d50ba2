"""
Approval Gate - client sign-off before a milestone counts as done.

Task progress alone never completes a milestone while approval is
required: the most recent Approval on record must be ``approved``.
Records are append-only, so "most recent" is decided by (created_at, id).

Gate states reported by ``ApprovalGate.status``:
    cleared            approval not required, or latest record approved
    pending_approval   no record yet, or latest record still pending
    rejected           latest record rejected (feedback shown to provider)

Roles:
    provider  may request completion
    client    may submit approvals
"""

from datetime import datetime, timezone

from app.core.exceptions import ForbiddenError, ValidationError

GATE_CLEARED = "cleared"
GATE_PENDING = "pending_approval"
GATE_REJECTED = "rejected"

SUBMITTABLE_STATUSES = {"approved", "rejected"}

_FEEDBACK_MAX = 5000


def _recency(approval):
    created = approval.created_at or datetime.min.replace(tzinfo=timezone.utc)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created, approval.id or 0


def latest_approval(approvals):
    """Return the authoritative (most recent) approval, or None."""
    approvals = [a for a in approvals if a is not None]
    if not approvals:
        return None
    return max(approvals, key=_recency)


def approval_history(approvals):
    """Approvals newest first."""
    return sorted(approvals, key=_recency, reverse=True)


class ApprovalGate:
    """
    Decides whether a milestone's sign-off is in place.

    Args:
        require_approval: When False the gate is always cleared and approval
            records are informational only.
        on_submitted: Optional callable ``(milestone, approval)`` invoked
            after an approval has been recorded.
    """

    def __init__(self, require_approval=True, on_submitted=None):
        self.require_approval = require_approval
        self.on_submitted = on_submitted

    def status(self, milestone):
        if not self.require_approval:
            return GATE_CLEARED
        latest = latest_approval(milestone.approvals)
        if latest is None or latest.status == "pending":
            return GATE_PENDING
        if latest.status == "approved":
            return GATE_CLEARED
        return GATE_REJECTED

    def is_cleared(self, milestone):
        return self.status(milestone) == GATE_CLEARED

    def pending_approval(self, milestone, progress):
        """
        The "pending approval" qualifier shown next to an in-progress
        milestone whose tasks are all done but whose sign-off is missing.
        """
        if milestone.status in ("completed", "cancelled"):
            return False
        return progress >= 100 and not self.is_cleared(milestone)

    def rejection_feedback(self, milestone):
        """Feedback text of the latest approval when it is a rejection."""
        latest = latest_approval(milestone.approvals)
        if latest is not None and latest.status == "rejected":
            return latest.feedback
        return None

    # ── Submission rules ─────────────────────────────────────────────────

    @staticmethod
    def may_request_completion(role):
        """Only the provider (or the engine itself, role None) completes milestones."""
        return role is None or role == "provider"

    @staticmethod
    def check_submission(role, status, feedback=None):
        """
        Validate an approval submission and return the cleaned feedback.

        Raises:
            ForbiddenError: role is not ``client``.
            ValidationError: status is not approved/rejected, or feedback too long.
        """
        if role != "client":
            raise ForbiddenError(
                f"Only the client may submit approvals (role={role!r})"
            )
        if status not in SUBMITTABLE_STATUSES:
            raise ValidationError(
                f"Invalid approval status '{status}'",
                details={"status": sorted(SUBMITTABLE_STATUSES)},
            )
        if feedback is not None:
            feedback = str(feedback).strip() or None
        if feedback and len(feedback) > _FEEDBACK_MAX:
            raise ValidationError(
                "feedback is too long",
                details={"feedback": f"max {_FEEDBACK_MAX} characters"},
            )
        return feedback

    def notify_submitted(self, milestone, approval):
        if self.on_submitted is not None:
            self.on_submitted(milestone, approval)
