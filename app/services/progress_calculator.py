"""
Progress Calculator.

Derives a milestone's completion percentage from its tasks, and a
booking-level percentage from its milestones.  Every function here is
pure: it reads attributes off the objects passed in (ORM rows or plain
snapshots) and never touches the session, so it is safe to call on every
read.

Rules:
    - task weight is a positive multiplier; None, 0 or negative counts as 1
    - milestone % = round(100 * completed weight / total weight)
    - no tasks → 0
    - booking % = milestone-weight-weighted mean of milestone %
    - rounding is half-up (50.5 → 51), result always clamped to 0..100
"""

import math

COMPLETED = "completed"


def effective_weight(weight) -> float:
    """Return the weight used for progress math (non-positive or missing → 1)."""
    if weight is None or weight <= 0:
        return 1.0
    return float(weight)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(math.floor(value + 0.5))


def _clamp(pct: int) -> int:
    return max(0, min(100, pct))


def compute_progress(tasks) -> int:
    """
    Weighted completion percentage for a list of tasks.

    With every weight resolving to 1 this is the plain completed/total
    count, which is also what happens when all weights are missing.
    """
    tasks = list(tasks)
    if not tasks:
        return 0

    total_weight = 0.0
    completed_weight = 0.0
    for task in tasks:
        w = effective_weight(getattr(task, "weight", None))
        total_weight += w
        if task.status == COMPLETED:
            completed_weight += w

    return _clamp(round_half_up(100 * completed_weight / total_weight))


def compute_milestone_progress(milestone) -> int:
    """ComputeProgress(milestone): percentage 0..100 derived from its current tasks."""
    return compute_progress(milestone.tasks)


def compute_booking_progress(milestones) -> int:
    """
    Booking rollup: weighted mean of each milestone's recomputed progress.

    Milestone weights follow the same rule as task weights.  A booking
    without milestones is at 0.
    """
    milestones = list(milestones)
    if not milestones:
        return 0

    total_weight = 0.0
    weighted = 0.0
    for m in milestones:
        w = effective_weight(getattr(m, "weight", None))
        total_weight += w
        weighted += w * compute_milestone_progress(m)

    return _clamp(round_half_up(weighted / total_weight))


def task_counts(tasks) -> dict:
    """Count tasks per status plus total/completed, for progress summaries."""
    counts = {"total": 0, "completed": 0, "by_status": {}}
    for task in tasks:
        counts["total"] += 1
        counts["by_status"][task.status] = counts["by_status"].get(task.status, 0) + 1
        if task.status == COMPLETED:
            counts["completed"] += 1
    return counts
