from flask import Blueprint, Response, current_app, jsonify

from ..health import run_health_checks


health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
def health():
    report = run_health_checks()
    status_code = 200 if report["status"] == "ok" else 503
    return jsonify(report), status_code


@health_bp.route("/metrics", methods=["GET"])
def metrics():
    manager = current_app.extensions.get("reconciler_metrics")
    if manager is None or not manager.enabled:
        return jsonify({"error": "Metrics disabled"}), 404
    body, content_type = manager.render()
    return Response(body, headers={"Content-Type": content_type})
