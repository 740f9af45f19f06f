"""Celery application for deployments that dispatch jobs through a broker."""

from celery import Celery

from abrworker.core.config import settings

celery_app = Celery(
    "abrworker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["abrworker.modules.transcoding.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    # one job per process at a time, acked after it finishes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=24 * 3600,
)
