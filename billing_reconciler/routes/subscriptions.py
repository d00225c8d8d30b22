from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from ..billing.factory import build_coordinator


subscription_bp = Blueprint("subscription", __name__, url_prefix="/api/subscription")


def _account_id() -> str:
    return str(get_jwt_identity())


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@subscription_bp.route("", methods=["GET"])
@jwt_required()
def get_subscription():
    """Current subscription, refreshed from Stripe before it is returned."""
    state = build_coordinator().pull(_account_id())
    return jsonify({"subscription": state.to_dict()}), 200


@subscription_bp.route("/checkout", methods=["POST"])
@jwt_required()
def create_checkout():
    data = _body()
    session = build_coordinator().create_checkout(
        _account_id(),
        data.get("plan"),
        customer_email=data.get("email"),
        coupon=data.get("coupon_code"),
    )
    return jsonify(session), 200


@subscription_bp.route("/portal", methods=["POST"])
@jwt_required()
def create_portal():
    return jsonify(build_coordinator().create_portal(_account_id())), 200


@subscription_bp.route("/cancel", methods=["POST"])
@jwt_required()
def cancel_subscription():
    state = build_coordinator().cancel(_account_id())
    return jsonify({
        "message": "Subscription will be canceled at the end of the billing period",
        "subscription": state.to_dict(),
    }), 200


@subscription_bp.route("/resume", methods=["POST"])
@jwt_required()
def resume_subscription():
    state = build_coordinator().resume(_account_id())
    return jsonify({
        "message": "Subscription resumed",
        "subscription": state.to_dict(),
    }), 200


@subscription_bp.route("/upgrade", methods=["POST"])
@jwt_required()
def upgrade_subscription():
    state = build_coordinator().change_plan(_account_id(), _body().get("plan"), "upgrade")
    return jsonify({
        "message": "Subscription upgraded",
        "subscription": state.to_dict(),
    }), 200


@subscription_bp.route("/downgrade", methods=["POST"])
@jwt_required()
def downgrade_subscription():
    state = build_coordinator().change_plan(_account_id(), _body().get("plan"), "downgrade")
    return jsonify({
        "message": "Subscription downgraded",
        "subscription": state.to_dict(),
    }), 200
