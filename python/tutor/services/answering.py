"""Answer worker: runs inference for one job and applies its outcome.

Processing an initial question:
1. Load the question; skip unless it is still pending
2. Resolve the model (question's model, else the default available model)
3. Render the prompt, then close the session for the duration of inference
4. Call the provider with bounded retries and exponential backoff
5. In one transaction: conditional terminal transition, and on success the
   credit commit keyed by the job id

Processing a follow-up:
1. Load the question; skip unless its in-flight slot is this message
2. Resolve the model (requested on the message, else question's, else default)
3. Render the continuation prompt with the prior history
4. Inference as above
5. In one transaction: release the slot and append the assistant reply (or
   the apology after exhausting retries), and commit credits on success

Redelivery is harmless: the skip checks in step 1 and the conditional
writes in step 5 make every job idempotent. Provider failures never
escape process(); they end in a failed question or an apology message.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from tutor.config import Settings
from tutor.db.models import AiModel, ChatMessage, Question, QuestionStatus
from tutor.db.session import transaction
from tutor.logging import get_logger, set_job_id
from tutor.services.conversations import APOLOGY_MESSAGE, close_follow_up, conversation_history
from tutor.services.jobs import AnswerJob, JobKind
from tutor.services.ledger import UsageLedger
from tutor.services.llm.errors import LLMError, LLMErrorClass
from tutor.services.llm.prompt import (
    PromptTooLargeError,
    render_follow_up_prompt,
    render_question_prompt,
    validate_prompt_size,
)
from tutor.services.llm.router import LLMRouter
from tutor.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, LLMResponse, Turn
from tutor.services.pricing import TokenPricing, base_credits, pricing_for_model
from tutor.services.questions import transition_if_pending

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    """What process() did with a job."""

    ANSWERED = "answered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ModelChoice:
    """Detached snapshot of the model chosen for a job."""

    id: int
    provider: str
    model_name: str
    pricing: TokenPricing

    @classmethod
    def of(cls, model: AiModel) -> "ModelChoice":
        return cls(model.id, model.provider, model.model_name, pricing_for_model(model))


@dataclass(frozen=True)
class InferenceResult:
    """Outcome of the retry loop. Exactly one of response / error is set."""

    response: LLMResponse | None
    error: LLMError | None
    elapsed_ms: int | None
    attempts: int


class AnswerWorker:
    """Processes answer jobs against the database and the inference router.

    Constructed once per process and shared by every job it runs.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        router: LLMRouter,
        ledger: UsageLedger,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._router = router
        self._ledger = ledger
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    def process(self, job: AnswerJob) -> JobOutcome:
        """Run one job to completion. Never raises for provider failures."""
        set_job_id(job.job_id)
        try:
            logger.info("answer_job.started", kind=job.kind.value, question_id=str(job.question_id))
            if job.kind == JobKind.FOLLOW_UP:
                outcome = self._process_follow_up(job)
            else:
                outcome = self._process_question(job)
            logger.info("answer_job.finished", outcome=outcome.value)
            return outcome
        finally:
            set_job_id(None)

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after a failed attempt (1-based), capped."""
        return self._settings.backoff_s(attempt)

    # =========================================================================
    # Initial question
    # =========================================================================

    def _process_question(self, job: AnswerJob) -> JobOutcome:
        with self._session_factory() as db:
            question = self._load_question(db, job)
            if question is None:
                logger.warning("answer_job.skipped", reason="question_not_found")
                return JobOutcome.SKIPPED
            if question.status != QuestionStatus.pending.value:
                logger.info("answer_job.skipped", reason="already_terminal", status=question.status)
                return JobOutcome.SKIPPED

            choice = self._resolve_model(db, question.ai_model_id)
            turns = render_question_prompt(
                question.subject.name,
                question.subject.ai_prompt,
                question.question_text,
                [a["name"] for a in question.file_attachments or []],
            )
            question_row_id = question.id
            user_id = question.user_id

        result = self._infer(job, choice, turns, LLMOperation.QUESTION_ANSWER)

        with self._session_factory() as db, transaction(db):
            if result.response is not None:
                transitioned = transition_if_pending(
                    db,
                    question_row_id,
                    QuestionStatus.answered,
                    answer_text=result.response.text,
                    token_usage=_total_tokens(result.response),
                    processing_time_ms=result.elapsed_ms,
                    ai_model_id=choice.id,
                )
                if transitioned and user_id is not None:
                    self._ledger.commit(
                        db,
                        user_id,
                        job.job_id,
                        base_credits(result.response.usage, choice.pricing),
                    )
                outcome = JobOutcome.ANSWERED
            else:
                transitioned = transition_if_pending(
                    db,
                    question_row_id,
                    QuestionStatus.failed,
                    error_message=result.error.user_message,
                    processing_time_ms=result.elapsed_ms,
                )
                outcome = JobOutcome.FAILED

        if not transitioned:
            return JobOutcome.SKIPPED
        logger.info(
            "question_completed",
            status=outcome.value,
            attempts=result.attempts,
            processing_time_ms=result.elapsed_ms,
            error_class=result.error.error_class.value if result.error else None,
        )
        return outcome

    # =========================================================================
    # Follow-up
    # =========================================================================

    def _process_follow_up(self, job: AnswerJob) -> JobOutcome:
        with self._session_factory() as db:
            question = self._load_question(db, job)
            if question is None or question.active_followup_id != job.message_id:
                logger.info("answer_job.skipped", reason="follow_up_not_in_flight")
                return JobOutcome.SKIPPED

            message = db.execute(
                select(ChatMessage).where(ChatMessage.message_id == job.message_id)
            ).scalar_one_or_none()
            if message is None:
                logger.warning("answer_job.skipped", reason="message_not_found")
                return JobOutcome.SKIPPED

            choice = self._resolve_model(db, message.ai_model_id or question.ai_model_id)
            turns = render_follow_up_prompt(
                question.subject.name,
                question.question_text,
                question.answer_text or "",
                conversation_history(list(question.messages), job.message_id),
                message.content,
            )
            question_row_id = question.id
            user_id = question.user_id

        result = self._infer(job, choice, turns, LLMOperation.FOLLOW_UP)

        with self._session_factory() as db, transaction(db):
            if result.response is not None:
                closed = close_follow_up(
                    db,
                    question_row_id,
                    job.message_id,
                    content=result.response.text,
                    user_id=user_id,
                    ai_model_id=choice.id,
                    token_usage=_total_tokens(result.response),
                    processing_time_ms=result.elapsed_ms,
                )
                if closed and user_id is not None:
                    self._ledger.commit(
                        db,
                        user_id,
                        job.job_id,
                        base_credits(result.response.usage, choice.pricing),
                    )
                outcome = JobOutcome.ANSWERED
            else:
                closed = close_follow_up(
                    db,
                    question_row_id,
                    job.message_id,
                    content=APOLOGY_MESSAGE,
                    user_id=user_id,
                    ai_model_id=choice.id if choice else None,
                    processing_time_ms=result.elapsed_ms,
                    error_code=result.error.error_class.value,
                )
                outcome = JobOutcome.FAILED

        if not closed:
            return JobOutcome.SKIPPED
        logger.info(
            "follow_up_completed",
            status=outcome.value,
            attempts=result.attempts,
            processing_time_ms=result.elapsed_ms,
            error_class=result.error.error_class.value if result.error else None,
        )
        return outcome

    # =========================================================================
    # Shared steps
    # =========================================================================

    def _load_question(self, db: Session, job: AnswerJob) -> Question | None:
        return db.execute(
            select(Question)
            .options(selectinload(Question.subject))
            .where(Question.question_id == job.question_id)
        ).scalar_one_or_none()

    def _usable(self, model: AiModel | None) -> bool:
        return (
            model is not None
            and model.is_available
            and self._router.is_provider_available(model.provider)
        )

    def _resolve_model(self, db: Session, preferred_id: int | None) -> ModelChoice | None:
        """Preferred model if usable, else the default available model."""
        if preferred_id is not None:
            preferred = db.get(AiModel, preferred_id)
            if self._usable(preferred):
                return ModelChoice.of(preferred)
            logger.warning("answer_job.model_fallback", ai_model_id=preferred_id)

        candidates = db.execute(
            select(AiModel)
            .where(AiModel.is_default.is_(True), AiModel.is_available.is_(True))
            .order_by(AiModel.id)
        ).scalars()
        for model in candidates:
            if self._usable(model):
                return ModelChoice.of(model)
        return None

    def _infer(
        self,
        job: AnswerJob,
        choice: ModelChoice | None,
        turns: list[Turn],
        operation: LLMOperation,
    ) -> InferenceResult:
        """Call the provider with the job's retry budget.

        Non-retryable error classes stop immediately; the rest are retried
        with exponential backoff until the attempts run out.
        """
        if choice is None:
            return _failed_before_call(
                LLMError(LLMErrorClass.MODEL_NOT_AVAILABLE, "No AI model available")
            )

        api_key = self._settings.provider_api_key(choice.provider)
        if not api_key:
            return _failed_before_call(
                LLMError(
                    LLMErrorClass.INVALID_KEY,
                    "No platform API key configured",
                    provider=choice.provider,
                )
            )

        try:
            validate_prompt_size(turns)
        except PromptTooLargeError as e:
            return _failed_before_call(
                LLMError(LLMErrorClass.CONTEXT_TOO_LARGE, str(e), provider=choice.provider)
            )

        request = LLMRequest(
            model_name=choice.model_name,
            messages=turns,
            max_tokens=self._settings.inference_max_tokens,
        )
        max_attempts = self._settings.inference_max_attempts
        last_error: LLMError | None = None
        elapsed_ms: int | None = None

        for attempt in range(1, max_attempts + 1):
            started = self._clock()
            try:
                response = self._router.generate(
                    choice.provider,
                    request,
                    api_key,
                    timeout_s=self._settings.inference_timeout_s,
                    call_context=LLMCallContext(
                        operation=operation,
                        job_id=job.job_id,
                        question_id=str(job.question_id),
                        attempt=attempt,
                    ),
                )
                return InferenceResult(
                    response=response,
                    error=None,
                    elapsed_ms=_elapsed_ms(started, self._clock()),
                    attempts=attempt,
                )
            except LLMError as e:
                last_error = e
                elapsed_ms = _elapsed_ms(started, self._clock())
                logger.warning(
                    "answer_job.attempt_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error_class=e.error_class.value,
                    retryable=e.retryable,
                )
                if not e.retryable or attempt == max_attempts:
                    return InferenceResult(
                        response=None, error=e, elapsed_ms=elapsed_ms, attempts=attempt
                    )
                delay = self.backoff_delay(attempt)
                logger.info("answer_job.retry_scheduled", attempt=attempt, delay_s=delay)
                self._sleep(delay)

        # Unreachable with max_attempts >= 1
        return InferenceResult(
            response=None, error=last_error, elapsed_ms=elapsed_ms, attempts=max_attempts
        )


def _failed_before_call(error: LLMError) -> InferenceResult:
    logger.warning("answer_job.not_attempted", error_class=error.error_class.value)
    return InferenceResult(response=None, error=error, elapsed_ms=None, attempts=0)


def _elapsed_ms(started: float, finished: float) -> int:
    """Whole milliseconds, never zero for a call that happened."""
    return max(1, math.ceil((finished - started) * 1000))


def _total_tokens(response: LLMResponse) -> int | None:
    if response.usage is None:
        return None
    return response.usage.billable_total


def build_answer_worker(
    settings: Settings,
    session_factory: sessionmaker[Session],
    client: httpx.Client,
) -> AnswerWorker:
    """Wire a worker from settings over a shared HTTP client."""
    router = LLMRouter(
        client,
        enable_openai=settings.enable_openai,
        enable_anthropic=settings.enable_anthropic,
        enable_gemini=settings.enable_gemini,
    )
    return AnswerWorker(session_factory, router, UsageLedger.from_settings(settings), settings)
