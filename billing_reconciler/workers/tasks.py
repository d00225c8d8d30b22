# billing_reconciler/workers/tasks.py
from celery.utils.log import get_task_logger

from ..billing.factory import build_coordinator
from ..errors import SweepAlreadyRunning, TransientError
from ..extensions import db
from .celery_app import celery

logger = get_task_logger(__name__)


@celery.task(
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=30,
    retry_kwargs={"max_retries": 3},
    retry_jitter=True,
)
def expire_lapsed_subscriptions(self):
    """Daily sweep: downgrade every record whose scheduled cancellation has passed."""
    try:
        report = build_coordinator().run_sweep()
    except SweepAlreadyRunning:
        logger.info("Sweep already running elsewhere, skipping this run")
        return {"status": "skipped"}
    except Exception:
        db.session.rollback()
        raise
    finally:
        db.session.remove()

    return {
        "status": "success",
        "checked": report.checked,
        "expired": len(report.expired),
        "failed": len(report.failed),
    }


@celery.task(
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=60,
    retry_kwargs={"max_retries": 3},
    retry_jitter=True,
)
def reconcile_subscriptions(self):
    """Pull every linked subscription from Stripe to repair missed webhooks."""
    try:
        summary = build_coordinator().reconcile_all()
    except Exception:
        db.session.rollback()
        raise
    finally:
        db.session.remove()
    return {"status": "success", **summary}


@celery.task(
    bind=True,
    autoretry_for=(TransientError,),
    retry_backoff=10,
    retry_kwargs={"max_retries": 5},
    retry_jitter=True,
)
def reconcile_account(self, account_id):
    try:
        state = build_coordinator().pull(account_id)
    except Exception:
        db.session.rollback()
        raise
    finally:
        db.session.remove()
    return state.to_dict()
