from celery import Celery

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "gptcore",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    imports=("gptcore.services.retention",),
    beat_schedule={
        # Sweep research jobs older than JOB_MAX_AGE_HOURS from the shared Redis registry
        "cleanup-expired-research-jobs": {
            "task": "gptcore.services.retention.cleanup_expired_jobs",
            "schedule": settings.JOB_CLEANUP_INTERVAL_SECONDS,
        },
    },
)
