# billing_reconciler/logging_config.py
import logging
import logging.config
import os
from datetime import datetime

from flask import g, has_request_context, request
from pythonjsonlogger.json import JsonFormatter


class RequestIdFilter(logging.Filter):
    """
    Inject request_id into every log record if present.
    """

    def filter(self, record):
        record.request_id = g.get("request_id") if has_request_context() else None
        return True


def logging_dict(log_level: str, with_request_id: bool = True) -> dict:
    fmt = (
        "%(asctime)s "
        "%(levelname)s "
        "%(name)s "
        "%(message)s "
        "%(module)s "
        "%(funcName)s "
        "%(lineno)d"
    )
    handler = {
        "class": "logging.StreamHandler",
        "formatter": "json",
    }
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonFormatter,
                "fmt": fmt + (" %(request_id)s" if with_request_id else ""),
            },
        },
        "handlers": {"default": handler},
        "root": {
            "level": log_level,
            "handlers": ["default"],
        },
    }
    if with_request_id:
        config["filters"] = {"request_id": {"()": RequestIdFilter}}
        handler["filters"] = ["request_id"]
    return config


def setup_logging(app):
    """Configure structured JSON logging for the application"""
    log_level = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")
    logging.config.dictConfig(logging_dict(log_level.upper()))

    logger = logging.getLogger("billing_reconciler.requests")

    @app.before_request
    def log_request():
        if app.config.get("LOG_REQUESTS", False):
            g.start_time = datetime.now()
            logger.info(
                f"Request: {request.method} {request.path}",
                extra={"ip": request.remote_addr},
            )

    @app.after_request
    def log_response(response):
        if app.config.get("LOG_REQUESTS", False) and "start_time" in g:
            duration = (datetime.now() - g.start_time).total_seconds() * 1000
            logger.info(
                f"Response: {request.method} {request.path} - {response.status_code}",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round(duration, 2),
                    "method": request.method,
                    "path": request.path,
                },
            )
        return response

    return app


def configure_logging_for_non_flask():
    """Configure logging for the Celery worker and standalone scripts."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.config.dictConfig(logging_dict(log_level, with_request_id=False))
