"""Structured logging configuration using structlog.

Provides JSON-formatted logs with consistent context including:
- request_id: Correlation ID for request tracing (forwarded into answer jobs)
- user_id: Viewer identity (when available)
- path / method: Raw request path (never includes query string) and HTTP method
- task_name / task_id: Celery task context
- job_id: Answer job identity ("question:{id}" or "followup:{message_id}")
- timestamp: ISO8601 formatted timestamp

Usage:
    from tutor.logging import get_logger, configure_logging

    configure_logging()
    logger = get_logger(__name__)
    logger.info("question_admitted", question_id=str(question_id))

Celery Task Logging:
    @celery_app.task(bind=True)
    def answer_job(self, question_id, request_id: str | None = None):
        configure_task_logging(
            request_id=request_id, task_name="answer_job", task_id=self.request.id
        )
        logger.info("answer_job_started")
"""

import logging
import sys
from contextvars import ContextVar

import structlog

# Context variables for request-scoped logging
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
task_name_var: ContextVar[str | None] = ContextVar("task_name", default=None)
task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "user_id": user_id_var,
    "task_name": task_name_var,
    "task_id": task_id_var,
    "path": path_var,
    "method": method_var,
    "job_id": job_id_var,
}


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Add request context to all log entries.

    Injects all non-None ContextVar values into the log event dict. Values
    passed explicitly at the call site win over context values.
    """
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(json_format: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one handler on stdout.

    JSON lines in deployment; LOG_FORMAT=console switches to the dev renderer.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _bind(**values: str | None) -> None:
    for key, value in values.items():
        _CONTEXT_VARS[key].set(value)


def set_request_context(
    request_id: str | None,
    user_id: str | None = None,
    path: str | None = None,
    method: str | None = None,
) -> None:
    """Bind request fields for the current context; None leaves a field as is.

    RequestIDMiddleware calls this twice: once on entry with path and method,
    and again with user_id once the auth middleware has identified the viewer.
    """
    _bind(request_id=request_id)
    _bind(**{k: v for k, v in (("user_id", user_id), ("path", path), ("method", method)) if v})


def clear_request_context() -> None:
    _bind(request_id=None, user_id=None, path=None, method=None)


def get_request_id() -> str | None:
    return request_id_var.get()


def set_job_id(job_id: str | None) -> None:
    """Tag worker log lines with "question:{id}" or "followup:{message_id}"."""
    _bind(job_id=job_id)


def configure_task_logging(
    request_id: str | None = None,
    task_name: str | None = None,
    task_id: str | None = None,
) -> None:
    """Bind Celery task context at the start of a task.

    request_id is the id of the HTTP request that admitted the work, carried
    in the job payload, so worker lines correlate with the access log entry.
    """
    _bind(request_id=request_id, task_name=task_name, task_id=task_id)


def clear_task_context() -> None:
    _bind(**dict.fromkeys(_CONTEXT_VARS))
