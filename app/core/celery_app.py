"""
Celery application configuration.

This module configures Celery to use Redis as both the message broker and result backend.
The worker runs periodic housekeeping for expired one-time codes and challenges.
"""

from celery import Celery
from celery.schedules import crontab
from app.core.config import settings

# Create Celery instance
celery_app = Celery(
    "onestep_auth_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

# Configure Celery
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task behavior
    task_track_started=True,
    task_time_limit=120,
    task_soft_time_limit=90,

    # Result backend
    result_expires=3600,  # Results expire after 1 hour

    # Worker behavior
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,

    beat_schedule={
        "cleanup-expired-auth-records": {
            "task": "cleanup_expired_auth_records",
            "schedule": crontab(minute=0),  # hourly
        },
    },
)

# Auto-discover tasks from app.tasks package
celery_app.autodiscover_tasks(["app.tasks"], related_name="cleanup_tasks")
