"""Celery application with a periodic task to purge stale reset codes."""

from celery import Celery

from .config import settings


celery_app = Celery(
    "guias",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["guias.tasks"],
)

celery_app.conf.beat_schedule = {
    "purge-reset-codes": {
        "task": "guias.tasks.purge_reset_codes",
        "schedule": settings.schedule_frequency,
    }
}
celery_app.conf.timezone = "UTC"
