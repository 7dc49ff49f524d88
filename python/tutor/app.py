"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, gateway auth middleware, request-id
middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. GatewayAuthMiddleware (internal header, sets viewer)
3. Route handler
4. GatewayAuthMiddleware (returns response)
5. RequestIDMiddleware (logs, sets response header)

Collaborator lifecycle:
- The lifespan builds the inference router over one shared httpx.Client,
  the usage ledger, the attachment store, and the job dispatcher, and
  stores them on app.state; routes reach them through tutor.api.deps
- In inline dispatch mode the dispatcher submits AnswerWorker jobs to a
  thread pool, so admission never waits on inference
- The thread pool is drained and the HTTP client closed at shutdown
"""

from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tutor.api.routes import create_api_router
from tutor.auth.middleware import GatewayAuthMiddleware
from tutor.config import JobDispatchMode, LogFormat, get_settings
from tutor.db.session import get_session_factory
from tutor.errors import ApiError
from tutor.logging import configure_logging, get_logger
from tutor.middleware.request_id import RequestIDMiddleware
from tutor.responses import (
    api_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from tutor.services.answering import AnswerWorker
from tutor.services.jobs import CeleryJobDispatcher, InlineJobDispatcher, JobDispatcher
from tutor.services.ledger import UsageLedger
from tutor.services.llm import LLMRouter
from tutor.storage import AttachmentStoreBase, get_attachment_store

# Configure structured logging at import time
_settings = get_settings()
configure_logging(
    json_format=_settings.log_format == LogFormat.JSON, level=_settings.log_level
)

logger = get_logger(__name__)


def _build_lifespan(
    llm_router: LLMRouter | None,
    attachment_store: AttachmentStoreBase | None,
    dispatcher: JobDispatcher | None,
    job_executor: Executor | None,
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()

        app.state.httpx_client = httpx.Client(
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )
        app.state.llm_router = llm_router or LLMRouter(
            app.state.httpx_client,
            enable_openai=settings.enable_openai,
            enable_anthropic=settings.enable_anthropic,
            enable_gemini=settings.enable_gemini,
        )
        app.state.ledger = UsageLedger.from_settings(settings)
        app.state.attachment_store = attachment_store or get_attachment_store(settings)

        owned_executor = None
        if dispatcher is not None:
            app.state.dispatcher = dispatcher
        elif settings.job_dispatch_mode == JobDispatchMode.INLINE:
            worker = AnswerWorker(
                get_session_factory(), app.state.llm_router, app.state.ledger, settings
            )
            executor = job_executor
            if executor is None:
                executor = owned_executor = ThreadPoolExecutor(
                    max_workers=settings.inline_job_workers, thread_name_prefix="answer-job"
                )
            app.state.dispatcher = InlineJobDispatcher(worker.process, executor)
        else:
            app.state.dispatcher = CeleryJobDispatcher()

        logger.info(
            "app_collaborators_initialized",
            dispatch_mode=settings.job_dispatch_mode.value,
            enable_openai=settings.enable_openai,
            enable_anthropic=settings.enable_anthropic,
            enable_gemini=settings.enable_gemini,
        )

        yield

        if owned_executor is not None:
            owned_executor.shutdown(wait=True)
            logger.info("inline_job_executor_stopped")
        app.state.httpx_client.close()
        logger.info("httpx_client_closed")

    return lifespan


def create_app(
    *,
    llm_router: LLMRouter | None = None,
    attachment_store: AttachmentStoreBase | None = None,
    dispatcher: JobDispatcher | None = None,
    job_executor: Executor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        llm_router: Inference router override (tests inject a scripted fake).
        attachment_store: Attachment store override.
        dispatcher: Job dispatcher override.
        job_executor: Executor for inline dispatch; the lifespan owns a
            thread pool when None.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Tutor API",
        description="Asynchronous question answering and follow-up conversations",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_build_lifespan(llm_router, attachment_store, dispatcher, job_executor),
    )

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(create_api_router())

    app.add_middleware(
        GatewayAuthMiddleware,
        requires_internal_header=settings.requires_internal_header,
        internal_secret=settings.tutor_internal_secret,
    )
    logger.info(
        "auth_middleware_enabled",
        env=settings.tutor_env.value,
        internal_header_required=settings.requires_internal_header,
    )

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
