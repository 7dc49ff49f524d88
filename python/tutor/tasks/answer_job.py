"""Celery task for answer jobs.

One task serves both job kinds; the payload carries the kind. The task:
1. Restores logging context (request id of the admitting call, job id)
2. Hands the job to the process-wide AnswerWorker
3. Returns the outcome for the result backend

max_retries=0: inference retries happen inside the worker with backoff,
and provider failures end in a terminal state rather than an exception.
acks_late + reject_on_worker_lost requeue a job whose worker died, and the
worker's conditional writes make that redelivery harmless.
"""

from functools import lru_cache

import httpx

from tutor.celery import celery_app
from tutor.config import get_settings
from tutor.db.session import get_session_factory
from tutor.logging import clear_task_context, configure_task_logging, get_logger
from tutor.services.answering import AnswerWorker, build_answer_worker
from tutor.services.jobs import AnswerJob

logger = get_logger(__name__)


@lru_cache
def get_worker() -> AnswerWorker:
    """Process-wide worker; its httpx.Client pools provider connections."""
    return build_answer_worker(get_settings(), get_session_factory(), httpx.Client())


@celery_app.task(
    bind=True,
    max_retries=0,
    acks_late=True,
    reject_on_worker_lost=True,
    name="answer_job",
)
def answer_job(self, payload: dict) -> dict:
    """Answer a question or a follow-up message.

    Args:
        payload: AnswerJob.to_payload() output.

    Returns:
        Dict with the job id and its outcome.
    """
    job = AnswerJob.from_payload(payload)
    configure_task_logging(
        request_id=job.request_id,
        task_name="answer_job",
        task_id=self.request.id,
    )
    try:
        outcome = get_worker().process(job)
        return {"job_id": job.job_id, "outcome": outcome.value}
    except Exception as e:
        logger.error("answer_job_crashed", job_id=job.job_id, error=str(e))
        raise
    finally:
        clear_task_context()
