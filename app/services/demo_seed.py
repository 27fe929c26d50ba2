"""
Demo booking seed for local exploration (``flask seed-demo-booking``).

Builds three milestones chained finish-to-start, each with a couple of
weighted tasks, through the regular service functions so every write
goes through the same validation as the API.
"""

import logging

from app.models.milestone import Milestone
from app.services import milestone_service as svc

logger = logging.getLogger(__name__)

DEMO_BOOKING_ID = "demo-booking"

_DEMO_PLAN = [
    ("Discovery & kickoff", 16, [("Kickoff workshop", 1), ("Requirements sign-off", 2)]),
    ("Build", 40, [("Implement core features", 3), ("Internal QA", 1)]),
    ("Handover", 8, [("Client walkthrough", 1), ("Documentation", 1)]),
]


def seed_demo_booking(booking_id=DEMO_BOOKING_ID):
    """Create the demo plan unless the booking already has milestones (idempotent)."""
    existing = Milestone.query.filter_by(booking_id=booking_id).count()
    if existing:
        logger.info("Booking %s already has %s milestones, skipping seed", booking_id, existing)
        return Milestone.query.filter_by(booking_id=booking_id).order_by(Milestone.order_index).all()

    created = []
    for title, hours, tasks in _DEMO_PLAN:
        milestone = svc.create_milestone(booking_id, {"title": title, "estimated_hours": hours})
        for task_title, weight in tasks:
            svc.create_task(milestone.id, {"title": task_title, "weight": weight})
        if created:
            svc.add_milestone_dependency(milestone.id, created[-1].id, "finish_to_start", 0)
        created.append(milestone)
    return created
