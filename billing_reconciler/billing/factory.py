from flask import current_app

from .coordinator import ReconciliationCoordinator
from .ledger import IdempotencyLedger
from .plan_resolver import PlanResolver
from .store import SubscriptionStore
from .verifier import EventVerifier
from ..extensions import db, get_redis_client
from ..observability.metrics import ReconcilerMetrics


def build_coordinator(app=None) -> ReconciliationCoordinator:
    """Wire a coordinator for the current app context from its config."""
    app = app or current_app
    config = app.config
    session = db.session

    return ReconciliationCoordinator(
        store=SubscriptionStore(session),
        ledger=IdempotencyLedger(session),
        verifier=EventVerifier(
            config.get("STRIPE_WEBHOOK_SECRET"),
            tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        ),
        resolver=PlanResolver.from_config(config),
        provider=app.extensions.get("billing_provider"),
        metrics=app.extensions.get("reconciler_metrics") or ReconcilerMetrics(enabled=False),
        lock_client=get_redis_client(),
        max_cas_retries=config.get("RECONCILE_MAX_CAS_RETRIES", 3),
        pull_max_retries=config.get("PULL_MAX_RETRIES", 2),
        pull_retry_delay=config.get("PULL_RETRY_DELAY", 0.5),
        sweep_lock_ttl=config.get("SWEEP_LOCK_TTL", 300),
        frontend_url=config.get("FRONTEND_URL", "http://localhost:3000"),
    )
