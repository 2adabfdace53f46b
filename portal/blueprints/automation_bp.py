"""
Client Portal
Automation Rules Blueprint.

Endpoints:
    GET    /api/v1/automation/rules              list (?active=true)
    POST   /api/v1/automation/rules              create (validated)
    GET    /api/v1/automation/rules/<id>
    PATCH  /api/v1/automation/rules/<id>         partial update (validated)
    DELETE /api/v1/automation/rules/<id>         deactivate
    GET    /api/v1/automation/executions         execution records
    POST   /api/v1/automation/sweep              run one sweep now
"""

import logging

from flask import Blueprint, jsonify, request

from portal.blueprints import paginate_args, request_actor_id
from portal.services import automation_rules
from portal.services.phase_service import get_phase_service
from portal.utils.errors import E, api_error, register_service_error_handlers
from portal.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

automation_bp = Blueprint("automation", __name__, url_prefix="/api/v1/automation")
register_service_error_handlers(automation_bp)


@automation_bp.route("/rules", methods=["GET"])
def list_rules():
    rules = automation_rules.list_rules(active_only=parse_bool(request.args.get("active")))
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@automation_bp.route("/rules", methods=["POST"])
def create_rule():
    data = request.get_json(silent=True) or {}
    if not data:
        return api_error(E.VALIDATION_REQUIRED, "Request body is required")
    rule = automation_rules.create_rule(data, created_by=request_actor_id(data))
    return jsonify(rule.to_dict()), 201


@automation_bp.route("/rules/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    return jsonify(automation_rules.get_rule(rule_id).to_dict())


@automation_bp.route("/rules/<int:rule_id>", methods=["PATCH"])
def update_rule(rule_id):
    data = request.get_json(silent=True) or {}
    return jsonify(automation_rules.update_rule(rule_id, data).to_dict())


@automation_bp.route("/rules/<int:rule_id>", methods=["DELETE"])
def deactivate_rule(rule_id):
    return jsonify(automation_rules.deactivate_rule(rule_id).to_dict())


@automation_bp.route("/executions", methods=["GET"])
def list_executions():
    limit, offset = paginate_args(default_limit=100)
    items, total = automation_rules.list_executions(
        rule_id=request.args.get("rule_id", type=int),
        project_id=request.args.get("project_id", type=int),
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [r.to_dict() for r in items], "total": total})


@automation_bp.route("/sweep", methods=["POST"])
def run_sweep():
    """Run one automation sweep synchronously."""
    result = get_phase_service().run_automation_sweep_once()
    status = 503 if result.get("aborted") else 200
    return jsonify(result), status
