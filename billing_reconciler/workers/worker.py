"""
Celery entrypoint:

    celery -A billing_reconciler.workers.worker:celery worker -Q billing,default
    celery -A billing_reconciler.workers.worker:celery beat
"""
from dotenv import load_dotenv

load_dotenv()

from ..logging_config import configure_logging_for_non_flask  # noqa: E402
from .. import create_app  # noqa: E402
from .celery_app import init_celery  # noqa: E402

flask_app = create_app()
# Replaces the request-scoped logging create_app installs
configure_logging_for_non_flask()
celery = init_celery(flask_app)
