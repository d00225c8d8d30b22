from flask import Blueprint, jsonify, request

from ..billing.factory import build_coordinator


webhook_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhook_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """
    Stripe webhook receiver.

    The body is read as raw bytes, the signature is computed over them.
    Returns 400 only for signature or parse failures; everything else is
    acknowledged with 200 so Stripe stops redelivering.
    """
    payload = request.get_data(cache=False)
    signature = request.headers.get("Stripe-Signature")

    ack = build_coordinator().handle_webhook(payload, signature)

    if ack.http_status >= 400:
        return jsonify({"received": False, "error": "Invalid webhook"}), ack.http_status
    return jsonify({"received": True, "outcome": ack.outcome}), ack.http_status
