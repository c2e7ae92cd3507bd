import os
from celery import Celery
from datetime import timedelta

from .config import settings


broker = os.getenv("CELERY_BROKER_URL") or settings.REDIS_URL

celery_app = Celery(
    "marketplace",
    broker=broker,
    backend=os.getenv("CELERY_RESULT_BACKEND", broker),
    include=["marketplace.tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    task_default_queue="marketplace",
    task_acks_late=True,
)

if settings.EXPIRY_SWEEP_INTERVAL_SECS > 0:
    celery_app.conf.beat_schedule = {
        "expiry-sweep": {
            "task": "marketplace.tasks.run_expiry_sweep",
            "schedule": timedelta(seconds=settings.EXPIRY_SWEEP_INTERVAL_SECS),
        }
    }
