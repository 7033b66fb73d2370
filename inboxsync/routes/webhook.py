import logging
import time

from flask import Blueprint, current_app, jsonify, request

from inboxsync.errors import AuthError, JobError, MailboxAPIError
from inboxsync.extensions import db
from inboxsync.models import utcnow
from inboxsync.receiver import NotificationReceiver
from inboxsync.services import get_services

logger = logging.getLogger(__name__)

gmail_bp = Blueprint("gmail", __name__, url_prefix="/api/gmail")


@gmail_bp.route("/webhook", methods=["GET", "POST"])
def webhook():
    if request.method == "GET":
        return jsonify({"success": True, "message": "Gmail webhook endpoint is active", "timestamp": utcnow().isoformat()})

    started = time.monotonic()
    receiver = NotificationReceiver(get_services(), current_app.config["PUBSUB_VERIFICATION_TOKEN"])
    try:
        outcome = receiver.handle(request.get_json(silent=True), token=request.args.get("token", ""))
    except Exception:
        # acknowledge anyway so Pub/Sub does not redeliver
        logger.exception("Webhook processing error")
        db.session.rollback()
        outcome = "error"
    logger.debug("Webhook completed: %s in %.3fs", outcome, time.monotonic() - started)
    return jsonify({"success": True, "outcome": outcome})


@gmail_bp.route("/process-email", methods=["POST"])
def process_email():
    """Run a sync job synchronously (for push-style queues that call back over HTTP)."""
    try:
        stats = get_services().sync.run(request.get_json(silent=True))
    except JobError as exc:
        status = 404 if "No active watch" in str(exc) else 400
        return jsonify({"success": False, "error": str(exc)}), status
    except AuthError as exc:
        return jsonify({"success": False, "error": str(exc)}), 401
    except MailboxAPIError as exc:
        logger.error("Email processing worker error: %s", exc)
        db.session.rollback()
        return jsonify({"success": False, "error": "Email processing failed"}), 500
    return jsonify({"success": True, "data": stats.to_dict()})
