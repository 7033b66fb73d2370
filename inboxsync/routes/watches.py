from flask import Blueprint, jsonify

from inboxsync.extensions import db
from inboxsync.models import OAuthAccount, User, Watch, utcnow
from inboxsync.services import get_services
from inboxsync.watches import STATUS_ALREADY_ACTIVE, STATUS_STARTED

watches_bp = Blueprint("watches", __name__, url_prefix="/api")


@watches_bp.route("/watches/<int:user_id>", methods=["GET"])
def status(user_id):
    user = db.get_or_404(User, user_id)
    now = utcnow()
    watches = [
        w
        for w in Watch.query.filter_by(user_id=user.id, active=True).order_by(Watch.created_at.desc()).all()
        if w.is_live(now)
    ]
    return jsonify(
        {
            "isActive": bool(watches),
            "activeWatches": len(watches),
            "totalAccounts": len(user.accounts),
            "accounts": [
                {"accountEmail": w.account_email, "expiresAt": w.expires_at.isoformat(), "historyId": w.cursor}
                for w in watches
            ],
        }
    )


@watches_bp.route("/watches/<int:user_id>/setup", methods=["POST"])
def setup(user_id):
    user = db.get_or_404(User, user_id)
    results = get_services().watches.setup_for_user(user)
    started = sum(1 for r in results if r.status == STATUS_STARTED)
    already = sum(1 for r in results if r.status == STATUS_ALREADY_ACTIVE)
    failed = len(results) - started - already
    return jsonify(
        {
            "success": started + already > 0,
            "started": started,
            "alreadyActive": already,
            "failed": failed,
            "accounts": [r.to_dict() for r in results],
        }
    )


@watches_bp.route("/watches/<int:user_id>/stop", methods=["POST"])
def stop(user_id):
    user = db.get_or_404(User, user_id)
    result = get_services().watches.stop_all(user)
    return jsonify({"success": True, **result})


@watches_bp.route("/accounts/<int:account_id>/disconnect", methods=["POST"])
def disconnect(account_id):
    account = db.get_or_404(OAuthAccount, account_id)
    if len(account.user.accounts) <= 1:
        return jsonify(
            {"success": False, "error": "Cannot disconnect the last connected account."}
        ), 400
    account_email = get_services().watches.teardown(account.user_id, account)
    return jsonify({"success": True, "accountEmail": account_email})
