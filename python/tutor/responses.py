"""Response envelopes and exception handlers.

Success: {"data": ...}
Error:   {"error": {"code": "E_...", "message": "...", "request_id": "..."}}

Pydantic payloads are dumped in wire form (camelCase, JSON-safe) here, so
routes hand over service DTOs unchanged.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tutor.errors import ApiError, ApiErrorCode
from tutor.logging import get_logger, get_request_id

logger = get_logger(__name__)

# Starlette raises HTTPException for routing failures (unknown path, wrong method)
_HTTP_STATUS_TO_CODE = {
    400: ApiErrorCode.E_INVALID_REQUEST,
    401: ApiErrorCode.E_UNAUTHENTICATED,
    403: ApiErrorCode.E_FORBIDDEN,
    404: ApiErrorCode.E_NOT_FOUND,
    405: ApiErrorCode.E_INVALID_REQUEST,
    422: ApiErrorCode.E_INVALID_REQUEST,
}


def _to_wire(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_to_wire(item) for item in data]
    return data


def success_response(data: Any) -> dict[str, Any]:
    """Wrap a payload (DTO, list of DTOs, or plain JSON value) in the data envelope."""
    return {"data": _to_wire(data)}


def error_response(
    code: ApiErrorCode, message: str, request_id: str | None = None
) -> dict[str, Any]:
    """Build the error envelope.

    request_id defaults to the one bound by RequestIDMiddleware and is
    omitted when there is none.
    """
    request_id = request_id or get_request_id()
    error = {"code": code.value, "message": message}
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


def _error_json(status_code: int, code: ApiErrorCode, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_response(code, message))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("api_error", code=exc.code.value, status_code=exc.status_code)
    return _error_json(exc.status_code, exc.code, exc.message)


async def http_exception_handler(request: Request, exc: Any) -> JSONResponse:
    code = _HTTP_STATUS_TO_CODE.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    return _error_json(exc.status_code, code, str(exc.detail) if exc.detail else "Request failed")


async def validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Malformed JSON, missing form fields, unparseable path ids."""
    return _error_json(400, ApiErrorCode.E_INVALID_REQUEST, "Invalid request")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 E_INTERNAL; the exception is logged, never echoed to the client."""
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return _error_json(500, ApiErrorCode.E_INTERNAL, "Internal server error")
