"""
Client Portal
Notification & Scheduling Blueprint.

Provides:
    - Project notifications (list, unread count, mark read)
    - Scheduled job management (list, status, trigger, toggle)
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from portal.blueprints import paginate_args
from portal.models.notification import RECIPIENT_ROLES
from portal.services.notification import NotificationService
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")


def _scheduler():
    return current_app.extensions["scheduler"]


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/projects/<int:project_id>/notifications", methods=["GET"])
def list_project_notifications(project_id):
    role = request.args.get("recipient_role")
    if role and role not in RECIPIENT_ROLES:
        return api_error(E.VALIDATION_INVALID,
                         f"Invalid recipient_role. Must be one of: {sorted(RECIPIENT_ROLES)}")
    limit, offset = paginate_args()
    items, total = NotificationService.list_for_project(
        project_id,
        recipient_role=role,
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(project_id, recipient_role=role),
    })


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH"])
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/projects/<int:project_id>/notifications/mark-all-read", methods=["POST"])
def mark_all_read(project_id):
    role = (request.get_json(silent=True) or {}).get("recipient_role")
    count = NotificationService.mark_all_read(project_id, recipient_role=role)
    return jsonify({"marked_read": count})


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULER JOBS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    jobs = _scheduler().list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)})


@notification_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    status = _scheduler().get_job_status(job_name)
    if status is None:
        return api_error(E.NOT_FOUND, f"Job not found: {job_name}")
    return jsonify(status)


@notification_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    scheduler = _scheduler()
    if job_name not in scheduler.registered_jobs:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    result = scheduler.run_job(job_name)
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    data = request.get_json(silent=True) or {}
    if "enabled" not in data:
        return api_error(E.VALIDATION_REQUIRED, "enabled is required")
    result = _scheduler().toggle_job(job_name, parse_bool(data.get("enabled")))
    if result is None:
        return api_error(E.NOT_FOUND, f"Job not found: {job_name}")
    return jsonify(result)
