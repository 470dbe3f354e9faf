"""Celery configuration."""
import os

from celery import Celery

# Initialize Sentry early for Celery workers
from pricetool.config.sentry import init_sentry

init_sentry()

from pricetool.utils.logger import get_logger  # noqa: E402

logger = get_logger(__name__)

broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

celery_app = Celery(
    "pricetool",
    broker=broker_url,
    backend=result_backend,
    include=["pricetool.services.queue.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Large hospital files take a while; the soft limit cancels the load cleanly
    task_time_limit=int(os.getenv("INGEST_TASK_TIME_LIMIT", str(2 * 60 * 60))),
    task_soft_time_limit=int(os.getenv("INGEST_TASK_SOFT_TIME_LIMIT", str(110 * 60))),
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
)
