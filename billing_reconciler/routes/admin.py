import hmac
import logging
from functools import wraps

from flask import Blueprint, abort, current_app, jsonify, request

from ..billing.factory import build_coordinator

logger = logging.getLogger(__name__)

ADMIN_SECRET_HEADER = "X-Admin-Secret"

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def admin_secret_required(view):
    """Guard operator endpoints with a shared secret, separate from user JWTs."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("ADMIN_SECRET")
        provided = request.headers.get(ADMIN_SECRET_HEADER, "")
        if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("Admin request rejected", extra={"path": request.path})
            abort(403)
        return view(*args, **kwargs)

    return wrapper


@admin_bp.route("/expire-subscriptions", methods=["POST"])
@admin_secret_required
def expire_subscriptions():
    """
    Run the subscription sweep on demand.

    Returns:
        JSON summary of checked, expired and failed accounts
    """
    report = build_coordinator().run_sweep()
    return jsonify({
        "status": "success",
        "data": {
            "checked": report.checked,
            "expired": report.expired,
            "failed": report.failed,
        },
    }), 200


@admin_bp.route("/reconcile/<account_id>", methods=["POST"])
@admin_secret_required
def reconcile_account(account_id):
    """Force a pull for one account."""
    state = build_coordinator().pull(account_id)
    return jsonify({"status": "success", "data": state.to_dict()}), 200
