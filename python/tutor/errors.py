"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_QUESTION_NOT_FOUND = "E_QUESTION_NOT_FOUND"
    E_SUBJECT_NOT_FOUND = "E_SUBJECT_NOT_FOUND"
    E_ATTACHMENT_NOT_FOUND = "E_ATTACHMENT_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_QUESTION_INVALID = "E_QUESTION_INVALID"
    E_MESSAGE_INVALID = "E_MESSAGE_INVALID"
    E_FILE_REJECTED = "E_FILE_REJECTED"

    # Conversation state conflicts (409)
    E_CONVERSATION_NOT_READY = "E_CONVERSATION_NOT_READY"
    E_CONVERSATION_BUSY = "E_CONVERSATION_BUSY"

    # Usage limits (429)
    E_QUOTA_EXCEEDED = "E_QUOTA_EXCEEDED"

    # Server errors
    E_STORAGE_ERROR = "E_STORAGE_ERROR"  # 502
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_QUESTION_NOT_FOUND: 404,
    ApiErrorCode.E_SUBJECT_NOT_FOUND: 404,
    ApiErrorCode.E_ATTACHMENT_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_QUESTION_INVALID: 400,
    ApiErrorCode.E_MESSAGE_INVALID: 400,
    ApiErrorCode.E_FILE_REJECTED: 400,
    ApiErrorCode.E_CONVERSATION_NOT_READY: 409,
    ApiErrorCode.E_CONVERSATION_BUSY: 409,
    ApiErrorCode.E_QUOTA_EXCEEDED: 429,
    ApiErrorCode.E_STORAGE_ERROR: 502,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class FileRejectedError(InvalidRequestError):
    """An attachment failed the MIME allow-list or size ceiling.

    Attributes:
        filename: Name of the offending file as uploaded.
        reason: Short machine-friendly reason (mime_type, too_large, empty, content).
    """

    def __init__(self, filename: str, reason: str, message: str):
        self.filename = filename
        self.reason = reason
        super().__init__(ApiErrorCode.E_FILE_REJECTED, f"File '{filename}' rejected: {message}")


class QuotaExceededError(ApiError):
    """The caller's plan has no remaining capacity for the requested usage kind."""

    def __init__(self, kind: str, limit: int):
        self.kind = kind
        self.limit = limit
        super().__init__(
            ApiErrorCode.E_QUOTA_EXCEEDED,
            f"Usage limit reached for {kind}: {limit} per billing period",
        )


class ConversationNotReadyError(ApiError):
    """Follow-up submitted against a question that is not answered."""

    def __init__(self, message: str = "Question has not been answered yet"):
        super().__init__(ApiErrorCode.E_CONVERSATION_NOT_READY, message)


class ConversationBusyError(ApiError):
    """Follow-up submitted while another follow-up is still being answered."""

    def __init__(self, message: str = "A follow-up for this question is still being answered"):
        super().__init__(ApiErrorCode.E_CONVERSATION_BUSY, message)
