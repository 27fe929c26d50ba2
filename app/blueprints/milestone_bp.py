"""
Milestone Engine Blueprint.

Endpoints (all under /api/v1):
  Milestone:      GET/POST /bookings/<booking_id>/milestones
                  GET/PUT/DELETE /milestones/<id>
                  POST /milestones/<id>/transition
                  GET  /milestones/<id>/can-transition?status=&role=
                  GET  /milestones/<id>/progress
  Booking:        GET  /bookings/<booking_id>/progress
                  GET  /bookings/<booking_id>/critical-path
  Sequence:       GET  /bookings/<booking_id>/milestones/sequence
                  POST /bookings/<booking_id>/milestones/reorder
                  POST /milestones/<id>/move
  Task:           GET/POST /milestones/<id>/tasks, PUT/DELETE /tasks/<id>
                  POST /tasks/<id>/transition
  Dependencies:   GET/POST /milestones/<id>/dependencies, DELETE /milestone-dependencies/<id>
                  GET/POST /tasks/<id>/dependencies, DELETE /task-dependencies/<id>
  Approval:       GET/POST /milestones/<id>/approvals
  Comment:        GET/POST /milestones/<id>/comments

The acting role (client | provider) is taken from the JSON body, or the
query string for GET routes.  It is trusted as given.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from app.models import db
from app.models.milestone import ROLES
from app.services import milestone_service as svc
from app.utils.errors import E, api_error
from app.utils.helpers import parse_int_arg

logger = logging.getLogger(__name__)

milestone_bp = Blueprint("milestone", __name__, url_prefix="/api/v1")


# ── Error handlers ───────────────────────────────────────────────────────────


@milestone_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    db.session.rollback()
    return api_error(E.NOT_FOUND, str(error))


@milestone_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    db.session.rollback()
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@milestone_bp.errorhandler(StateError)
def _handle_state(error: StateError):
    db.session.rollback()
    details = {"current": error.current, "target": error.target}
    return api_error(E.TRANSITION_DENIED, str(error), details=details)


@milestone_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    db.session.rollback()
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@milestone_bp.errorhandler(ConcurrencyConflict)
def _handle_concurrency(error: ConcurrencyConflict):
    db.session.rollback()
    return api_error(E.CONFLICT_STATE, str(error))


@milestone_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    db.session.rollback()
    return api_error(E.FORBIDDEN, str(error))


@milestone_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    if error.code == 429:
        return api_error(E.RATE_LIMITED, "Too many requests", status=429)
    code = E.INTERNAL if (error.code or 500) >= 500 else E.VALIDATION_INVALID
    return api_error(code, error.description or error.name, status=error.code)


@milestone_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    db.session.rollback()
    logger.exception("Unexpected error in milestone_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ──────────────────────────────────────────────────────────


def _json_body():
    """Return (data, None) or (None, error_response) for malformed JSON."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True):
            return None, api_error(E.VALIDATION_INVALID, "Request body must be valid JSON")
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _role(data=None):
    """Acting role from body or query string; (role, error_response)."""
    role = (data or {}).get("role") or request.args.get("role")
    if role is not None and (not isinstance(role, str) or role not in ROLES):
        return None, api_error(
            E.VALIDATION_INVALID, f"role must be one of {sorted(ROLES)}",
        )
    return role, None


def _int_field(data, field):
    try:
        return parse_int_arg(data.get(field)), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{field} must be an integer")


# ═════════════════════════════════════════════════════════════════════════════
# Milestones
# ═════════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/bookings/<booking_id>/milestones", methods=["GET"])
def list_milestones(booking_id):
    """Milestones of a booking in sequence order."""
    return jsonify(svc.list_milestones(booking_id))


@milestone_bp.route("/bookings/<booking_id>/milestones", methods=["POST"])
def create_milestone(booking_id):
    data, err = _json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")

    milestone = svc.create_milestone(booking_id, data)
    return jsonify(svc.serialize_milestone(milestone)), 201


@milestone_bp.route("/milestones/<int:milestone_id>", methods=["GET"])
def get_milestone(milestone_id):
    milestone = svc.get_milestone(milestone_id)
    return jsonify(svc.serialize_milestone(milestone, include_children=True))


@milestone_bp.route("/milestones/<int:milestone_id>", methods=["PUT"])
def update_milestone(milestone_id):
    data, err = _json_body()
    if err:
        return err
    expected_version, err = _int_field(data, "expected_version")
    if err:
        return err

    milestone = svc.update_milestone(milestone_id, data, expected_version=expected_version)
    return jsonify(svc.serialize_milestone(milestone))


@milestone_bp.route("/milestones/<int:milestone_id>", methods=["DELETE"])
def delete_milestone(milestone_id):
    """Delete a milestone with its tasks, approvals, comments and edges."""
    svc.delete_milestone(milestone_id)
    return jsonify({"deleted": True})


@milestone_bp.route("/milestones/<int:milestone_id>/transition", methods=["POST"])
def transition_milestone(milestone_id):
    """Explicit status change; 409 with the denial reason when a guard blocks it."""
    data, err = _json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    role, err = _role(data)
    if err:
        return err
    if status == "completed" and role is None:
        return api_error(E.VALIDATION_REQUIRED, "role is required to complete a milestone")
    expected_version, err = _int_field(data, "expected_version")
    if err:
        return err

    result = svc.transition_milestone(
        milestone_id, status, role=role, expected_version=expected_version,
    )
    return jsonify(result)


@milestone_bp.route("/milestones/<int:milestone_id>/can-transition", methods=["GET"])
def can_transition(milestone_id):
    status = request.args.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status query parameter is required")
    role, err = _role()
    if err:
        return err
    return jsonify(svc.can_transition_milestone(milestone_id, status, role=role))


@milestone_bp.route("/milestones/<int:milestone_id>/progress", methods=["GET"])
def milestone_progress(milestone_id):
    return jsonify(svc.milestone_progress(milestone_id))


# ═════════════════════════════════════════════════════════════════════════════
# Booking read models
# ═════════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/bookings/<booking_id>/progress", methods=["GET"])
def booking_progress(booking_id):
    return jsonify(svc.progress_summary(booking_id))


@milestone_bp.route("/bookings/<booking_id>/critical-path", methods=["GET"])
def booking_critical_path(booking_id):
    return jsonify(svc.critical_path(booking_id))


# ═════════════════════════════════════════════════════════════════════════════
# Sequence
# ═════════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/bookings/<booking_id>/milestones/sequence", methods=["GET"])
def get_sequence(booking_id):
    return jsonify(svc.sequence(booking_id))


@milestone_bp.route("/bookings/<booking_id>/milestones/reorder", methods=["POST"])
def reorder_milestones(booking_id):
    """Apply a full or partial target order; ``version`` guards against stale reads."""
    data, err = _json_body()
    if err:
        return err
    ordered_ids = data.get("ordered_ids")
    if ordered_ids is None:
        return api_error(E.VALIDATION_REQUIRED, "ordered_ids is required")
    if not isinstance(ordered_ids, list):
        return api_error(E.VALIDATION_INVALID, "ordered_ids must be a list")
    try:
        ordered_ids = [int(i) for i in ordered_ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "ordered_ids must contain integer ids")

    return jsonify(svc.reorder_milestones(booking_id, ordered_ids, version=data.get("version")))


@milestone_bp.route("/milestones/<int:milestone_id>/move", methods=["POST"])
def move_milestone(milestone_id):
    data, err = _json_body()
    if err:
        return err
    direction = data.get("direction")
    if not direction:
        return api_error(E.VALIDATION_REQUIRED, "direction is required")
    return jsonify(svc.move_milestone(milestone_id, direction, version=data.get("version")))


# ═════════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/milestones/<int:milestone_id>/tasks", methods=["GET"])
def list_tasks(milestone_id):
    return jsonify([t.to_dict() for t in svc.list_tasks(milestone_id)])


@milestone_bp.route("/milestones/<int:milestone_id>/tasks", methods=["POST"])
def create_task(milestone_id):
    data, err = _json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")

    task = svc.create_task(milestone_id, data)
    return jsonify(task.to_dict()), 201


@milestone_bp.route("/tasks/<int:task_id>", methods=["PUT"])
def update_task(task_id):
    data, err = _json_body()
    if err:
        return err
    task = svc.update_task(task_id, data)
    return jsonify(task.to_dict())


@milestone_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    result = svc.delete_task(task_id)
    result["deleted"] = True
    return jsonify(result)


@milestone_bp.route("/tasks/<int:task_id>/transition", methods=["POST"])
def transition_task(task_id):
    """Toggle a task; the owning milestone is re-evaluated in the same request."""
    data, err = _json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    role, err = _role(data)
    if err:
        return err

    return jsonify(svc.transition_task(task_id, status, role=role))


# ═════════════════════════════════════════════════════════════════════════════
# Dependencies
# ═════════════════════════════════════════════════════════════════════════════


def _dependency_args(data):
    depends_on_id, err = _int_field(data, "depends_on_id")
    if err:
        return None, err
    if depends_on_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "depends_on_id is required")
    return {
        "depends_on_id": depends_on_id,
        "dependency_type": data.get("dependency_type", "finish_to_start"),
        "lag_days": data.get("lag_days", 0),
    }, None


@milestone_bp.route("/milestones/<int:milestone_id>/dependencies", methods=["GET"])
def list_milestone_dependencies(milestone_id):
    return jsonify(svc.list_milestone_dependencies(milestone_id))


@milestone_bp.route("/milestones/<int:milestone_id>/dependencies", methods=["POST"])
def add_milestone_dependency(milestone_id):
    """Add ``milestone → depends_on``; cycles are rejected with 422."""
    data, err = _json_body()
    if err:
        return err
    args, err = _dependency_args(data)
    if err:
        return err

    dep = svc.add_milestone_dependency(milestone_id, **args)
    return jsonify(dep.to_dict()), 201


@milestone_bp.route("/milestone-dependencies/<int:dep_id>", methods=["DELETE"])
def delete_milestone_dependency(dep_id):
    svc.remove_milestone_dependency(dep_id)
    return jsonify({"deleted": True})


@milestone_bp.route("/tasks/<int:task_id>/dependencies", methods=["GET"])
def list_task_dependencies(task_id):
    return jsonify(svc.list_task_dependencies(task_id))


@milestone_bp.route("/tasks/<int:task_id>/dependencies", methods=["POST"])
def add_task_dependency(task_id):
    data, err = _json_body()
    if err:
        return err
    args, err = _dependency_args(data)
    if err:
        return err

    dep = svc.add_task_dependency(task_id, **args)
    return jsonify(dep.to_dict()), 201


@milestone_bp.route("/task-dependencies/<int:dep_id>", methods=["DELETE"])
def delete_task_dependency(dep_id):
    svc.remove_task_dependency(dep_id)
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# Approvals & comments
# ═════════════════════════════════════════════════════════════════════════════


@milestone_bp.route("/milestones/<int:milestone_id>/approvals", methods=["GET"])
def list_approvals(milestone_id):
    """Append-only approval log, newest first."""
    return jsonify(svc.list_approvals(milestone_id))


@milestone_bp.route("/milestones/<int:milestone_id>/approvals", methods=["POST"])
def submit_approval(milestone_id):
    """Client decision: approved clears the gate, rejected stores feedback."""
    data, err = _json_body()
    if err:
        return err
    status = data.get("status")
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    role, err = _role(data)
    if err:
        return err
    expected_version, err = _int_field(data, "expected_version")
    if err:
        return err

    result = svc.submit_approval(
        milestone_id, status,
        feedback=data.get("feedback"),
        role=role,
        expected_version=expected_version,
    )
    return jsonify(result), 201


@milestone_bp.route("/milestones/<int:milestone_id>/comments", methods=["GET"])
def list_comments(milestone_id):
    task_id = request.args.get("task_id", type=int)
    return jsonify([c.to_dict() for c in svc.list_comments(milestone_id, task_id=task_id)])


@milestone_bp.route("/milestones/<int:milestone_id>/comments", methods=["POST"])
def add_comment(milestone_id):
    data, err = _json_body()
    if err:
        return err
    if not data.get("body"):
        return api_error(E.VALIDATION_REQUIRED, "body is required")
    role, err = _role(data)
    if err:
        return err
    if role is None:
        return api_error(E.VALIDATION_REQUIRED, "role is required")
    task_id, err = _int_field(data, "task_id")
    if err:
        return err

    comment = svc.add_comment(milestone_id, data["body"], role, task_id=task_id)
    return jsonify(comment.to_dict()), 201
