"""Celery application configuration.

Central configuration for Celery used by both API (for enqueuing)
and worker (for executing tasks).

Usage:
    from tutor.celery import celery_app

    # Or import task directly:
    from tutor.tasks import answer_job
    answer_job.apply_async(args=[job.to_payload()], queue="answers")

Delivery is at-least-once: tasks are acknowledged after they finish and
requeued if the worker dies mid-task. Answer jobs are idempotent, so a
redelivery is harmless.
"""

from celery import Celery

from tutor.config import get_settings

settings = get_settings()

celery_app = Celery("tutor")

celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
# One long inference at a time per worker process
celery_app.conf.worker_prefetch_multiplier = 1

celery_app.conf.task_routes = {
    "answer_job": {"queue": "answers"},
    "sweep_stale_jobs": {"queue": "default"},
}
celery_app.conf.task_default_queue = "default"

# A worker started with -Q over these runs every routed task
WORKER_QUEUES = ("answers", "default")

celery_app.conf.beat_schedule = {
    "sweep-stale-jobs": {
        "task": "sweep_stale_jobs",
        "schedule": 60.0,
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False
