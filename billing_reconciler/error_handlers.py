# billing_reconciler/error_handlers.py
import logging
import traceback

from flask import jsonify, request

from .errors import (
    AccountNotFound,
    DomainError,
    ProviderError,
    ReconcilerError,
    TransientError,
)

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(400)
    def bad_request(e):
        logger.warning(f"Bad request: {str(e)} - Path: {request.path}")
        return jsonify({
            "error": "Bad request",
            "message": "The request could not be understood or was missing required parameters.",
            "path": request.path,
        }), 400

    @app.errorhandler(403)
    def forbidden(e):
        logger.warning(f"Forbidden: {str(e)} - Path: {request.path}")
        return jsonify({
            "error": "Forbidden",
            "message": "You don't have permission to access this resource.",
            "path": request.path,
        }), 403

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found on the server.",
            "path": request.path,
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": f"The {request.method} method is not supported for this endpoint.",
            "path": request.path,
        }), 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}")
        if app.config.get("DEBUG", False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path,
        }), 500

    # ============ RECONCILER ERRORS ============
    # Bodies carry a short code and a user-facing message only.

    @app.errorhandler(AccountNotFound)
    def handle_account_not_found(error):
        return jsonify({
            "error": "Not found",
            "code": error.code,
            "message": error.message,
        }), 404

    @app.errorhandler(DomainError)
    def handle_domain_error(error):
        logger.info(
            "Action not permitted",
            extra={"code": error.code, "path": request.path},
        )
        return jsonify({
            "error": "Action not permitted",
            "code": error.code,
            "message": error.message,
        }), 400

    @app.errorhandler(TransientError)
    def handle_transient_error(error):
        logger.warning(
            "Transient failure surfaced to caller",
            extra={"code": error.code, "path": request.path},
        )
        return jsonify({
            "error": "Try again",
            "code": error.code,
            "message": "The request could not be completed right now. Please try again.",
        }), 503

    @app.errorhandler(ProviderError)
    def handle_provider_error(error):
        logger.error(
            "Billing provider rejected request",
            extra={"code": error.code, "path": request.path},
        )
        return jsonify({
            "error": "Billing provider error",
            "code": error.code,
            "message": "The billing provider rejected the request.",
        }), 502

    @app.errorhandler(ReconcilerError)
    def handle_reconciler_error(error):
        logger.error(
            "Unhandled reconciler error",
            exc_info=error,
            extra={"code": error.code, "path": request.path},
        )
        return jsonify({
            "error": "Server error",
            "code": error.code,
            "message": "An internal server error occurred. Please try again later.",
        }), 500
