from flask import Blueprint, current_app, jsonify, request

from inboxsync.models import FailureLog, SyncJob
from inboxsync.services import get_services

maintenance_bp = Blueprint("maintenance", __name__, url_prefix="/api")


@maintenance_bp.route("/cron/sweep-watches", methods=["POST"])
def sweep_watches():
    secret = current_app.config["CRON_SECRET"]
    if secret and request.headers.get("Authorization") != f"Bearer {secret}":
        return jsonify({"success": False, "error": "Unauthorized"}), 401
    deactivated = get_services().watches.sweep_expired()
    return jsonify({"success": True, "deactivated": deactivated})


# ── JSON API for status checks ───────────────────────────────────
@maintenance_bp.route("/status")
def api_status():
    counts = {
        status: SyncJob.query.filter_by(status=status).count()
        for status in (SyncJob.STATUS_PENDING, SyncJob.STATUS_RUNNING, SyncJob.STATUS_FAILED)
    }
    logs = FailureLog.query.order_by(FailureLog.created_at.desc()).limit(20).all()
    return jsonify(
        {
            "jobs": counts,
            "recentFailures": [
                {"kind": log.kind, "accountEmail": log.account_email, "error": log.error_message, "at": log.created_at.isoformat()}
                for log in logs
            ],
        }
    )
