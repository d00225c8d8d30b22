# billing_reconciler/workers/celery_app.py
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

celery = Celery(
    "billing_reconciler",
    include=["billing_reconciler.workers.tasks"],
)

celery.conf.update(
    # Serialization
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Routing
    task_default_queue="default",
    task_queues=(
        Queue("default"),
        Queue("billing"),
    ),
    task_routes={
        "billing_reconciler.workers.tasks.*": {"queue": "billing"},
    },

    # Time limits
    task_time_limit=300,
    task_soft_time_limit=240,

    beat_schedule={
        "expire-lapsed-subscriptions-daily": {
            "task": "billing_reconciler.workers.tasks.expire_lapsed_subscriptions",
            "schedule": crontab(minute=0, hour=0),
        },
        "reconcile-subscriptions-hourly": {
            "task": "billing_reconciler.workers.tasks.reconcile_subscriptions",
            "schedule": crontab(minute=30, hour="*/1"),
        },
    },
)


def init_celery(app):
    """Bind the worker to a Flask app so every task runs inside its app context."""
    celery.conf.update(
        broker_url=app.config.get("CELERY_BROKER_URL"),
        result_backend=app.config.get("CELERY_RESULT_BACKEND"),
        task_always_eager=app.config.get("CELERY_TASK_ALWAYS_EAGER", False),
    )

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    return celery
