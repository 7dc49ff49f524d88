"""Answer job descriptors and dispatch.

An AnswerJob names one unit of inference work: answering a newly admitted
question, or answering one follow-up message. Its job_id is stable across
redeliveries and doubles as the idempotency key for credit commits.

Dispatch happens only after the admitting transaction commits, so a worker
can never observe a job whose rows are not yet visible. Enqueue failures
are logged, not raised: the admission already succeeded and the stale-job
sweeper bounds how long the work can stay pending.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from tutor.logging import get_logger

logger = get_logger(__name__)

ANSWERS_QUEUE = "answers"


class JobKind(str, Enum):
    """Kinds of answer work."""

    INITIAL_QUESTION = "initial_question"
    FOLLOW_UP = "follow_up"


@dataclass(frozen=True)
class AnswerJob:
    """One unit of work for the answer worker.

    Attributes:
        kind: Initial question or follow-up.
        question_id: Public question id.
        message_id: The user message being answered (follow-ups only).
        request_id: Request id of the admitting call, for log correlation.
    """

    kind: JobKind
    question_id: UUID
    message_id: UUID | None = None
    request_id: str | None = None

    @property
    def job_id(self) -> str:
        if self.kind == JobKind.FOLLOW_UP:
            return f"followup:{self.message_id}"
        return f"question:{self.question_id}"

    def to_payload(self) -> dict:
        """JSON-safe task payload."""
        return {
            "kind": self.kind.value,
            "question_id": str(self.question_id),
            "message_id": str(self.message_id) if self.message_id else None,
            "request_id": self.request_id,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AnswerJob":
        return cls(
            kind=JobKind(payload["kind"]),
            question_id=UUID(payload["question_id"]),
            message_id=UUID(payload["message_id"]) if payload.get("message_id") else None,
            request_id=payload.get("request_id"),
        )


class JobDispatcher(ABC):
    """Hands committed work to the answer worker pool."""

    @abstractmethod
    def dispatch(self, job: AnswerJob) -> bool:
        """Submit a job. Returns True if it was handed off, False otherwise.

        Never raises.
        """
        ...


class CeleryJobDispatcher(JobDispatcher):
    """Enqueue answer jobs on the Celery answers queue."""

    def dispatch(self, job: AnswerJob) -> bool:
        try:
            from tutor.tasks import answer_job

            answer_job.apply_async(args=[job.to_payload()], queue=ANSWERS_QUEUE)
        except Exception as e:
            logger.warning(
                "answer_job_enqueue_failed",
                job_id=job.job_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("answer_job_enqueued", job_id=job.job_id, kind=job.kind.value)
        return True


class InlineJobDispatcher(JobDispatcher):
    """Run answer jobs in-process on an executor.

    For local development without a broker, and for tests. The admitting
    request only submits the job; inference runs on the executor's threads.
    A job that raises is logged when its future completes.
    """

    def __init__(self, run_job: Callable[[AnswerJob], object], executor: Executor):
        self._run_job = run_job
        self._executor = executor

    def dispatch(self, job: AnswerJob) -> bool:
        try:
            future = self._executor.submit(self._run_job, job)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning("answer_job_submit_failed", job_id=job.job_id, error=str(e))
            return False

        future.add_done_callback(lambda f: _log_inline_failure(job, f))
        return True


def _log_inline_failure(job: AnswerJob, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            "answer_job_inline_failed",
            job_id=job.job_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
