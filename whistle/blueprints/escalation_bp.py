"""
Whistle Core
Escalation & notification operations API.

Endpoints:
    POST  /api/v1/escalations/sweep                      manual escalation sweep
    GET   /api/v1/escalations/<short_id>                 escalation record of a report
    GET   /api/v1/notifications/dispatches               dispatch log (paginated)
    GET   /api/v1/notifications/dashboard                recent dashboard alerts
    POST  /api/v1/notifications/dashboard/sessions       open a polling session
    GET   /api/v1/notifications/dashboard/sessions/<id>  queued alerts for a session
    DELETE /api/v1/notifications/dashboard/sessions/<id> close a polling session
    GET   /api/v1/scheduler/jobs                         scheduled jobs
    GET   /api/v1/scheduler/jobs/<job_name>              one job
    POST  /api/v1/scheduler/jobs/<job_name>/trigger      run a job now
    PATCH /api/v1/scheduler/jobs/<job_name>/toggle       enable / disable a job
"""

import logging
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from whistle.blueprints import paginate_query
from whistle.models.notification import NotificationDispatch
from whistle.models.scheduling import ScheduledJob
from whistle.services.scheduler_service import SchedulerService
from whistle.utils.errors import E, api_error

logger = logging.getLogger(__name__)

escalation_bp = Blueprint("escalation_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  ESCALATIONS
# ═══════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/escalations/sweep", methods=["POST"])
def run_sweep():
    """Run an escalation sweep now; optional ``{"now": "<iso datetime>"}``."""
    data = request.get_json(silent=True) or {}
    now = None
    if data.get("now"):
        try:
            now = datetime.fromisoformat(str(data["now"]))
        except ValueError:
            return api_error(E.VALIDATION_INVALID, "'now' must be an ISO 8601 datetime")

    monitor = current_app.extensions["escalation_monitor"]
    result = monitor.run_sweep(now)
    if result.skipped:
        return api_error(E.CONFLICT_STATE, "An escalation sweep is already running",
                         details=result.to_dict())
    return jsonify(result.to_dict())


@escalation_bp.route("/escalations/<short_id>", methods=["GET"])
def get_escalation(short_id):
    store = current_app.extensions["report_store"]
    report = store.get(short_id)
    if report is None:
        return api_error(E.NOT_FOUND, f"Report {short_id} not found")
    record = store.get_escalation_record(short_id)
    return jsonify({
        "short_id": short_id,
        "status": report.status,
        "priority": report.priority,
        "escalation": record.to_dict() if record else None,
    })


# ═══════════════════════════════════════════════════════════════════════════
#  DISPATCH LOG
# ═══════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/notifications/dispatches", methods=["GET"])
def list_dispatches():
    """Dispatch log, newest first. Filters: short_id, kind, status."""
    q = NotificationDispatch.query
    if request.args.get("short_id"):
        q = q.filter_by(report_short_id=request.args["short_id"])
    if request.args.get("kind"):
        q = q.filter_by(kind=request.args["kind"])
    if request.args.get("status"):
        q = q.filter_by(status=request.args["status"])
    q = q.order_by(NotificationDispatch.created_at.desc(), NotificationDispatch.id.desc())

    items, total = paginate_query(q)
    return jsonify({
        "items": [d.to_dict() for d in items],
        "total": total,
    })


# ═══════════════════════════════════════════════════════════════════════════
#  DASHBOARD FEED
# ═══════════════════════════════════════════════════════════════════════════

def _limit_arg(default, maximum):
    try:
        limit = int(request.args.get("limit", default))
    except ValueError:
        return None
    return max(1, min(limit, maximum))


@escalation_bp.route("/notifications/dashboard", methods=["GET"])
def dashboard_recent():
    """Recent dashboard alerts, newest first. Filter: kind."""
    limit = _limit_arg(20, 50)
    if limit is None:
        return api_error(E.VALIDATION_INVALID, "'limit' must be an integer")
    hub = current_app.extensions["dashboard_hub"]
    items = hub.recent(limit)
    if request.args.get("kind"):
        items = [m for m in items if m["type"] == request.args["kind"]]
    return jsonify({
        "items": items,
        "total": len(items),
        "subscribers": hub.subscriber_count(),
    })


@escalation_bp.route("/notifications/dashboard/sessions", methods=["POST"])
def dashboard_connect():
    """Open a polling session; alerts published from now on are queued for it."""
    session_id, _ = current_app.extensions["dashboard_hub"].subscribe()
    return jsonify({"session_id": session_id}), 201


@escalation_bp.route("/notifications/dashboard/sessions/<session_id>", methods=["GET"])
def dashboard_poll(session_id):
    """Take the alerts queued for a session, oldest first."""
    limit = _limit_arg(100, 100)
    if limit is None:
        return api_error(E.VALIDATION_INVALID, "'limit' must be an integer")
    items = current_app.extensions["dashboard_hub"].drain(session_id, limit)
    if items is None:
        return api_error(E.NOT_FOUND, "Dashboard session not found")
    return jsonify({"items": items, "total": len(items)})


@escalation_bp.route("/notifications/dashboard/sessions/<session_id>", methods=["DELETE"])
def dashboard_disconnect(session_id):
    if not current_app.extensions["dashboard_hub"].unsubscribe(session_id):
        return api_error(E.NOT_FOUND, "Dashboard session not found")
    return "", 204


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all scheduled jobs with their status."""
    jobs = ScheduledJob.query.order_by(ScheduledJob.job_name).all()
    return jsonify({
        "jobs": [j.to_dict() for j in jobs],
        "total": len(jobs),
        "running": SchedulerService.is_running(),
    })


@escalation_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    """Get status of a specific scheduled job."""
    status = SchedulerService.get_job_status(job_name)
    if not status:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(status)


@escalation_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@escalation_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
