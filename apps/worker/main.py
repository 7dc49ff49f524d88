"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q answers,default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in the tutor.tasks package - no autodiscovery.

Queue Configuration:
- answers: answer jobs (initial questions and follow-ups)
- default: the stale-job sweeper

Concurrency Notes:
- Each answer job holds a worker slot for up to
  INFERENCE_MAX_ATTEMPTS * INFERENCE_TIMEOUT_S plus backoff; size
  --concurrency for that rather than for CPU
"""

from celery.signals import worker_process_init

from tutor.celery import celery_app
from tutor.config import LogFormat, get_settings
from tutor.logging import configure_logging, get_logger

# =============================================================================
# Task Registration (explicit imports - no autodiscovery)
# =============================================================================

from tutor.tasks import answer_job, sweep_stale_jobs_task  # noqa: F401, E402

# =============================================================================
# Worker Lifecycle
# =============================================================================


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts."""
    settings = get_settings()
    configure_logging(json_format=settings.log_format == LogFormat.JSON, level=settings.log_level)
    logger = get_logger(__name__)
    logger.info("celery_worker_started")


__all__ = ["celery_app"]
