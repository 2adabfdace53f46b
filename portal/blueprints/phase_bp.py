"""
Client Portal
Phase Workflow Blueprint.

Endpoints:
    GET    /api/v1/phases                                         catalog
    POST   /api/v1/projects/<id>/phase-tracking                   initialize
    GET    /api/v1/projects/<id>/phase-state                      state + actions + summary
    GET    /api/v1/projects/<id>/phase-history                    transitions, oldest first
    POST   /api/v1/projects/<id>/phase-actions/<key>/complete     complete a required action
    POST   /api/v1/projects/<id>/phase-advance                    admin advance / override
    PATCH  /api/v1/projects/<id>/phase-status                     admin status change
"""

import logging

from flask import Blueprint, jsonify, request

from portal.blueprints import request_actor_id
from portal.services.phase_service import get_phase_service
from portal.utils.errors import E, api_error, register_service_error_handlers
from portal.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

phase_bp = Blueprint("phase", __name__, url_prefix="/api/v1")
register_service_error_handlers(phase_bp)


@phase_bp.route("/phases", methods=["GET"])
def list_phases():
    """Ordered workflow phases with their required actions."""
    return jsonify({"items": get_phase_service().list_phases()})


@phase_bp.route("/projects/<int:project_id>/phase-tracking", methods=["POST"])
def initialize_phase_tracking(project_id):
    data = request.get_json(silent=True) or {}
    state, created = get_phase_service().initialize_phase_tracking(
        project_id,
        actor_id=request_actor_id(data, default="system"),
        strict=parse_bool(data.get("strict")),
    )
    return jsonify({"state": state.to_dict(), "created": created}), 201 if created else 200


@phase_bp.route("/projects/<int:project_id>/phase-state", methods=["GET"])
def get_phase_state(project_id):
    return jsonify(get_phase_service().get_phase_state(project_id))


@phase_bp.route("/projects/<int:project_id>/phase-history", methods=["GET"])
def list_phase_history(project_id):
    items = get_phase_service().list_phase_history(project_id)
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)})


@phase_bp.route("/projects/<int:project_id>/phase-actions/<action_key>/complete", methods=["POST"])
def complete_required_action(project_id, action_key):
    data = request.get_json(silent=True) or {}
    service = get_phase_service()
    service.complete_required_action(
        project_id, action_key, request_actor_id(data), notes=data.get("notes"),
    )
    return jsonify(service.get_phase_state(project_id))


@phase_bp.route("/projects/<int:project_id>/phase-advance", methods=["POST"])
def advance_phase(project_id):
    """Admin advance. Body: {target_phase, override?, reason?}."""
    data = request.get_json(silent=True) or {}
    target = (data.get("target_phase") or "").strip()
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "target_phase is required")

    state = get_phase_service().advance_phase_manually(
        project_id,
        target,
        request_actor_id(data),
        override=parse_bool(data.get("override")),
        reason=data.get("reason"),
    )
    return jsonify({"state": state.to_dict()})


@phase_bp.route("/projects/<int:project_id>/phase-status", methods=["PATCH"])
def update_phase_status(project_id):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip()
    if not status:
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    state = get_phase_service().update_phase_status(project_id, status, request_actor_id(data))
    return jsonify({"state": state.to_dict()})
