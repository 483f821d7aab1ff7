from __future__ import annotations

from celery import Celery

from healz.core.config import settings
from healz.logging_utils import configure_logging

configure_logging()

celery_app = Celery(
    "healz",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["jobs.tasks"],
)

celery_app.conf.timezone = settings.timezone
celery_app.conf.broker_connection_retry_on_startup = True
celery_app.conf.task_acks_late = True
