"""Celery application used for deferred exception notifications."""

from __future__ import annotations

from celery import Celery
from kombu import Queue

from core.env import env_int, env_str

CELERY_BROKER_URL = env_str("CELERY_BROKER_URL", "redis://localhost:6379/0") or "redis://localhost:6379/0"
CELERY_RESULT_BACKEND = env_str("CELERY_RESULT_BACKEND")
CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
EXCEPTION_NOTIFICATION_QUEUE = env_str("EXCEPTION_NOTIFICATION_QUEUE", "exceptions") or "exceptions"

app = Celery(
    "errordesk",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["worker.tasks"],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_ignore_result=CELERY_RESULT_BACKEND is None,
    timezone=CELERY_TIMEZONE,
    enable_utc=CELERY_TIMEZONE.upper() == "UTC",
    task_default_queue=EXCEPTION_NOTIFICATION_QUEUE,
    task_queues=(Queue(EXCEPTION_NOTIFICATION_QUEUE),),
    task_acks_late=True,
    worker_prefetch_multiplier=env_int("CELERY_PREFETCH_MULTIPLIER", 1, minimum=1),
)
