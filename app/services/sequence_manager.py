"""
Sequence Manager - dense 0..N-1 ordering of a booking's milestones.

All functions are pure over the milestone objects handed in: they assign
``order_index`` on those objects (or return the assignment) and never
flush.  The service wraps each call in one locked transaction so the
whole permutation is written as a single batch.
"""

import hashlib

from app.core.exceptions import NotFoundError, ValidationError

DIRECTIONS = ("up", "down")


def ordered(milestones):
    """Milestones sorted by (order_index, id)."""
    return sorted(milestones, key=lambda m: (m.order_index, m.id))


def normalize(milestones):
    """
    Re-pack indices to 0..N-1 keeping the current relative order.
    Used after a delete leaves a gap.  Returns the ids whose index changed.
    """
    changed = []
    for idx, m in enumerate(ordered(milestones)):
        if m.order_index != idx:
            m.order_index = idx
            changed.append(m.id)
    return changed


def next_order_index(milestones):
    """Index for a newly created milestone: one past the current maximum."""
    indices = [m.order_index for m in milestones]
    return max(indices) + 1 if indices else 0


def sequence_version(milestones):
    """
    Short digest of the current (id, order_index) assignment.
    Clients echo it back on reorder/move; a mismatch means they saw a stale order.
    """
    payload = ",".join(f"{m.id}:{m.order_index}" for m in ordered(milestones))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def is_dense(milestones):
    return sorted(m.order_index for m in milestones) == list(range(len(milestones)))


def move(milestones, milestone_id, direction):
    """
    Swap one milestone with its neighbour.

    Moving the first milestone up (or the last one down) is a no-op.
    Returns True when indices changed.
    """
    if direction not in DIRECTIONS:
        raise ValidationError(
            f"Invalid direction '{direction}'",
            details={"direction": list(DIRECTIONS)},
        )
    seq = ordered(milestones)
    positions = {m.id: pos for pos, m in enumerate(seq)}
    if milestone_id not in positions:
        raise NotFoundError("Milestone", milestone_id)

    pos = positions[milestone_id]
    other = pos - 1 if direction == "up" else pos + 1
    if other < 0 or other >= len(seq):
        return False

    seq[pos], seq[other] = seq[other], seq[pos]
    for idx, m in enumerate(seq):
        m.order_index = idx
    return True


def reorder(milestones, ordered_ids):
    """
    Reorder(bookingId, orderedIds).

    A full ordering assigns 0..N-1 in the given order.  A partial ordering
    only permutes the listed milestones among the positions they occupy
    today; everything else keeps its index.

    Returns:
        dict mapping milestone id → new order_index (for every milestone).

    Raises:
        ValidationError: empty list or duplicate ids.
        NotFoundError: an id that is not a milestone of this booking.
    """
    ordered_ids = list(ordered_ids or [])
    if not ordered_ids:
        raise ValidationError("ordered_ids must be a non-empty list")
    if len(set(ordered_ids)) != len(ordered_ids):
        dupes = sorted({i for i in ordered_ids if ordered_ids.count(i) > 1})
        raise ValidationError(
            "ordered_ids contains duplicates",
            details={"duplicates": dupes},
        )

    seq = ordered(milestones)
    by_id = {m.id: m for m in seq}
    unknown = [i for i in ordered_ids if i not in by_id]
    if unknown:
        raise NotFoundError("Milestone", unknown[0])

    # Start from a dense view so a damaged sequence is repaired by any reorder.
    slots = {m.id: pos for pos, m in enumerate(seq)}
    if len(ordered_ids) == len(seq):
        assignment = {mid: pos for pos, mid in enumerate(ordered_ids)}
    else:
        taken = sorted(slots[mid] for mid in ordered_ids)
        assignment = dict(slots)
        for slot, mid in zip(taken, ordered_ids):
            assignment[mid] = slot

    for mid, idx in assignment.items():
        by_id[mid].order_index = idx
    return assignment
