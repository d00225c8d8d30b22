import time

import redis
from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, get_redis_client


def _check_database():
    start = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"status": "error", "error": type(e).__name__}


def _check_redis():
    if not current_app.config.get("REDIS_URL"):
        return {"status": "skipped", "reason": "REDIS_URL not set"}

    start = time.time()
    client = get_redis_client()
    if client is None:
        return {"status": "error", "error": "unavailable"}
    try:
        client.ping()
        latency = round((time.time() - start) * 1000, 2)
        return {"status": "ok", "latency_ms": latency}
    except redis.RedisError as e:
        return {"status": "error", "error": type(e).__name__}


def _check_billing():
    if current_app.extensions.get("billing_provider") is None:
        return {"status": "skipped", "reason": "STRIPE_SECRET_KEY not set"}
    webhook_mode = "verified" if current_app.config.get("STRIPE_WEBHOOK_SECRET") else "unverified"
    return {"status": "ok", "webhooks": webhook_mode}


def run_health_checks():
    """
    Master health runner used by route.
    """
    started = time.time()

    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
        "billing": _check_billing(),
    }

    overall = "ok"

    for c in checks.values():
        if c["status"] == "error":
            overall = "degraded"

    return {
        "status": overall,
        "timestamp": int(time.time()),
        "checks": checks,
        "duration_ms": round((time.time() - started) * 1000, 2),
        "environment": current_app.config.get("ENVIRONMENT", "unknown"),
    }
