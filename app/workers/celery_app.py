"""
Celery application configuration.
"""

from celery import Celery

from app.config import settings

# Create Celery app
celery_app = Celery(
    "carmarket_payments",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.workers.expiry_sweep",
    ],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.default_timezone,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=120,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Pushes that never received a callback
    "expire-stale-payments": {
        "task": "app.workers.expiry_sweep.expire_stale_payments",
        "schedule": settings.expiry_sweep_interval_minutes * 60.0,
    },
}
